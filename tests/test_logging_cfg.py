"""
Tests for structured logging helpers.
"""
import json
import logging

from pixelsync.infra.logging_cfg import JsonFormatter, ThrottledFilter, build_logger, event_logger


def _record(msg):
    return logging.LogRecord("pixelsync", logging.WARNING, __file__, 1, msg, None, None)


class TestThrottledFilter:

    def test_repeats_suppressed_per_key(self):
        flt = ThrottledFilter(cooldown_sec=60.0)
        retry_a = json.dumps({"event": "scheduler_retry", "key": "WIDTH"})
        retry_b = json.dumps({"event": "scheduler_retry", "key": "HEIGHT"})
        assert flt.filter(_record(retry_a))
        assert not flt.filter(_record(retry_a))
        assert flt.filter(_record(retry_b))

    def test_other_events_pass(self):
        flt = ThrottledFilter(cooldown_sec=60.0)
        msg = json.dumps({"event": "degraded_mode"})
        assert flt.filter(_record(msg))
        assert flt.filter(_record(msg))
        assert flt.filter(_record("plain text"))


class TestFormatting:

    def test_json_formatter(self):
        line = JsonFormatter().format(_record('{"event": "x"}'))
        payload = json.loads(line)
        assert payload["level"] == "WARNING"
        assert payload["msg"] == '{"event": "x"}'


class TestEventLogger:

    def test_context_merged_into_payload(self, caplog):
        logger = logging.getLogger("pixelsync.test_events")
        log = event_logger(logger, session="s1")
        with caplog.at_level(logging.INFO, logger="pixelsync.test_events"):
            log("chunk_merged", key="0,0", changed=3)
        payload = json.loads(caplog.records[-1].getMessage())
        assert payload == {"event": "chunk_merged", "session": "s1", "key": "0,0", "changed": 3}

    def test_build_logger_is_idempotent(self):
        first = build_logger("pixelsync.test_build", level="DEBUG", file_path=None)
        second = build_logger("pixelsync.test_build", level="WARNING", file_path=None)
        assert first is second
        assert len(second.handlers) == 1
        assert second.level == logging.WARNING
