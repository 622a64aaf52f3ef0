"""Unit tests for versions, event records and installer state."""

import pytest
from pydantic import ValidationError

from fieldagent.models.config import AgentConfig
from fieldagent.models.event import LogDescriptor, LogRecord, decode, encode
from fieldagent.models.update import InstallerState
from fieldagent.models.version import EMPTY_VERSION, Version, highest_version


@pytest.mark.unit
class TestVersion:
    """Test version parsing and ordering."""

    def test_parse_short_forms(self):
        assert Version.parse("1") == Version(1, 0, 0)
        assert Version.parse("1.2") == Version(1, 2, 0)
        assert str(Version.parse("1.2.3.beta")) == "1.2.3.beta"

    def test_parse_empty_is_empty_version(self):
        assert Version.parse("") is EMPTY_VERSION
        assert Version.parse(None) is EMPTY_VERSION

    @pytest.mark.parametrize("value", ["x", "1.a", "1.2.3.", "-1.0.0", "1.2.3.b c"])
    def test_parse_invalid(self, value):
        with pytest.raises(ValueError):
            Version.parse(value)

    def test_ordering(self):
        assert Version.parse("1.10.0") > Version.parse("1.9.9")
        assert Version.parse("1.0.0") < Version.parse("1.0.0.rc1")
        assert highest_version([Version(1), Version(3), Version(2)]) == Version(3)
        assert highest_version([]) == EMPTY_VERSION


@pytest.mark.unit
class TestLogRecord:
    """Test the event text representation."""

    def test_escaping_of_separators(self):
        value = "a,b c$\n"

        assert "," not in encode(value)
        assert decode(encode(value)) == value

    def test_invalid_escape_raises(self):
        with pytest.raises(ValueError):
            decode("abc$x")

    def test_representation_layout(self):
        record = LogRecord(
            target_id="t 1", store_id=7, id=3, time=1000, type=2003, properties={"msg": "ok"}
        )

        assert record.to_representation() == "t$s1,7,3,1000,2003,msg,ok"
        assert LogRecord.from_representation(record.to_representation() + "\n") == record

    def test_with_target_keeps_original(self):
        record = LogRecord(store_id=1, id=1, type=1)

        copy = record.with_target("target-9")

        assert copy.target_id == "target-9"
        assert record.target_id == ""

    @pytest.mark.parametrize("line", ["", "a,1,2,3", "a,1,x,3,4", "a,1,2,3,4,key"])
    def test_malformed_record(self, line):
        with pytest.raises(ValueError):
            LogRecord.from_representation(line)

    def test_descriptor_parsing(self):
        descriptor = LogDescriptor.from_representation("target-1,42,1-30,40-45")

        assert descriptor.target_id == "target-1"
        assert descriptor.store_id == 42
        assert descriptor.ranges.to_representation() == "1-30,40-45"

    def test_descriptor_without_ranges(self):
        descriptor = LogDescriptor.from_representation("target-1,42")

        assert not descriptor.ranges
        assert descriptor.to_representation() == "target-1,42"

    @pytest.mark.parametrize("line", ["", "   ", "target-1", "target-1,x", "target-1,1,5-2"])
    def test_descriptor_malformed(self, line):
        with pytest.raises(ValueError):
            LogDescriptor.from_representation(line)


@pytest.mark.unit
class TestInstallerState:
    """Test retry bookkeeping."""

    def test_skip_after_max_retries(self):
        state = InstallerState()
        version = Version(2)

        state.track(version)
        state.record_failure()
        assert not state.should_skip(version, 2)
        state.record_failure()

        assert state.should_skip(version, 2)
        assert not state.should_skip(Version(3), 2)

    def test_new_version_resets_failures(self):
        state = InstallerState()
        state.track(Version(2))
        state.record_failure()

        state.track(Version(3))

        assert state.failure_count == 0
        assert state.last_succeeded

    def test_success_clears_failures(self):
        state = InstallerState()
        state.track(Version(2))
        state.record_failure()

        state.record_success()

        assert state.failure_count == 0
        assert not state.should_skip(Version(2), 1)


@pytest.mark.unit
class TestAgentConfig:
    """Test configuration validation."""

    def test_defaults(self):
        config = AgentConfig()

        assert config.server_url is None
        assert config.feedback_channels == ["auditlog"]
        assert config.download_chunk_size == -1

    def test_frozen(self):
        config = AgentConfig()

        with pytest.raises(ValidationError):
            config.sync_interval = 5

    @pytest.mark.parametrize(
        "field,value",
        [
            ("server_url", "ftp://x"),
            ("sync_interval", 0),
            ("download_chunk_size", 0),
            ("feedback_channels", ["a/b"]),
            ("feedback_channels", ["a", "a"]),
            ("log_level", "LOUD"),
        ],
    )
    def test_invalid_values(self, field, value):
        with pytest.raises(ValidationError):
            AgentConfig(**{field: value})

    def test_log_level_normalized(self):
        assert AgentConfig(log_level="debug").log_level == "DEBUG"
