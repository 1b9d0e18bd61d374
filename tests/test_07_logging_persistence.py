def test_logging_jsonl_persistence(monkeypatch, tmp_path):
    import json
    import logging

    from tts_narrator.core.logging import configure_logging, get_logger, info, set_request_id

    monkeypatch.setenv("NARRATOR_LOG_DIR", str(tmp_path))
    monkeypatch.setenv("NARRATOR_JSONL_FILE", "test.jsonl")

    configure_logging(level=2, force=True)
    log = get_logger("test")
    set_request_id("book-1:p00003")
    info(log, "cache_hit", event="logging_test", bytes=48213)

    for handler in logging.getLogger().handlers:
        if hasattr(handler, "flush"):
            handler.flush()

    log_path = tmp_path / "test.jsonl"
    assert log_path.exists()

    line = log_path.read_text(encoding="utf-8").strip().splitlines()[-1]
    payload = json.loads(line)
    assert payload["message"] == "cache_hit"
    assert payload["request_id"] == "book-1:p00003"
    assert payload["event"] == "logging_test"
    assert payload["extra"]["bytes"] == 48213
    assert payload["level"] == 2

    monkeypatch.delenv("NARRATOR_LOG_DIR")
    configure_logging(force=True)
