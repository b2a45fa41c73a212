"""Required keys: placeholder detection and error reporting."""
from __future__ import annotations

import pytest

from socialsync.errors import ConfigurationError
from socialsync.security.secrets import MissingSecretError, is_placeholder, require_secret, require_value


@pytest.mark.parametrize(
    "value",
    [None, "", "   ", "changeme", "CHANGE-ME", "your-anon-key", "your_key_here", "<anon key>", "${SUPABASE_KEY}"],
)
def test_template_values_count_as_missing(value):
    assert is_placeholder(value)


@pytest.mark.parametrize("value", ["anon-123", "eyJhbGciOiJIUzI1NiJ9.payload.sig", "nyc3"])
def test_real_values_are_accepted(value):
    assert not is_placeholder(value)


def test_require_secret_reads_the_given_mapping():
    assert require_secret("LOCAL_JWT_SECRET", {"LOCAL_JWT_SECRET": "  s3cr3t \n"}) == "s3cr3t"


def test_missing_secret_is_a_configuration_error_naming_the_key(monkeypatch):
    monkeypatch.delenv("LOCAL_JWT_SECRET", raising=False)

    with pytest.raises(ConfigurationError) as excinfo:
        require_secret("LOCAL_JWT_SECRET")

    assert isinstance(excinfo.value, MissingSecretError)
    assert excinfo.value.name == "LOCAL_JWT_SECRET"
    assert "LOCAL_JWT_SECRET" in excinfo.value.message


def test_require_value_never_echoes_the_rejected_value():
    with pytest.raises(MissingSecretError) as excinfo:
        require_value("BACKEND_ANON_KEY", "<paste anon key>")

    assert "paste" not in excinfo.value.message
