"""Tests for managed-identity credentials and provider call auditing."""

from __future__ import annotations

import os
from unittest import mock

import pytest

from orchestrator.security import (
    CREDENTIAL_SECRET_ENV_VARS,
    AuditOutcome,
    SecretlessViolationError,
    audit_provider_call,
    enforce_secretless_architecture,
    find_credential_secrets,
    get_managed_identity_credential,
)

PROFILE_ID = "/subscriptions/x/resourceGroups/rg-edge/providers/Microsoft.Cdn/profiles/site"


class TestFindCredentialSecrets:
    """Tests for find_credential_secrets."""

    def test_clean_environment(self) -> None:
        assert find_credential_secrets({"AZURE_CLIENT_ID": "abc"}) == []

    def test_empty_values_ignored(self) -> None:
        """Test an exported but empty variable does not count."""
        assert find_credential_secrets({"AZURE_CLIENT_SECRET": ""}) == []

    def test_all_offenders_listed_in_order(self) -> None:
        environ = {"AZURE_PASSWORD": "p", "AZURE_CLIENT_SECRET": "s"}
        assert find_credential_secrets(environ) == ["AZURE_CLIENT_SECRET", "AZURE_PASSWORD"]


class TestEnforceSecretless:
    """Tests for enforce_secretless_architecture."""

    @pytest.mark.parametrize("env_var", CREDENTIAL_SECRET_ENV_VARS)
    def test_each_secret_blocks(self, env_var: str) -> None:
        """Test every credential variable stops provider construction."""
        with pytest.raises(SecretlessViolationError) as exc_info:
            enforce_secretless_architecture({env_var: "value"})

        assert exc_info.value.variables == [env_var]
        assert "Managed Identity" in str(exc_info.value)

    def test_reads_process_environment(self) -> None:
        with mock.patch.dict(os.environ, {"AZURE_USERNAME": "me"}):
            with pytest.raises(SecretlessViolationError, match="AZURE_USERNAME"):
                enforce_secretless_architecture()

    def test_violation_logged(self, caplog: pytest.LogCaptureFixture) -> None:
        """Test the violation is logged as a critical security event."""
        with pytest.raises(SecretlessViolationError):
            enforce_secretless_architecture({"AZURE_CLIENT_SECRET": "s"})

        record = caplog.records[-1]
        assert record.levelname == "CRITICAL"
        assert record.env_vars == ["AZURE_CLIENT_SECRET"]


class TestGetManagedIdentityCredential:
    """Tests for get_managed_identity_credential."""

    def test_secret_blocks_credential(self) -> None:
        with mock.patch.dict(os.environ, {"AZURE_CLIENT_SECRET": "secret"}):
            with pytest.raises(SecretlessViolationError):
                get_managed_identity_credential()

    @mock.patch("orchestrator.security.ManagedIdentityCredential")
    def test_system_assigned_by_default(self, credential_class: mock.Mock) -> None:
        assert get_managed_identity_credential() is credential_class.return_value
        credential_class.assert_called_once_with()

    @mock.patch("orchestrator.security.ManagedIdentityCredential")
    def test_user_assigned(self, credential_class: mock.Mock) -> None:
        """Test a client id selects the user-assigned identity."""
        get_managed_identity_credential(client_id="11111111-2222")
        credential_class.assert_called_once_with(client_id="11111111-2222")


class TestAuditProviderCall:
    """Tests for audit_provider_call."""

    def test_success_is_info(self, caplog: pytest.LogCaptureFixture) -> None:
        with caplog.at_level("INFO", logger="orchestrator.security"):
            audit_provider_call("create", PROFILE_ID, "Microsoft.Cdn/profiles", AuditOutcome.SUCCESS)

        record = caplog.records[-1]
        assert record.levelname == "INFO"
        assert record.security_audit is True
        assert record.resource_id == PROFILE_ID
        assert record.outcome == "success"

    def test_failure_is_warning(self, caplog: pytest.LogCaptureFixture) -> None:
        """Test failed mutations stand out in the log stream."""
        with caplog.at_level("INFO", logger="orchestrator.security"):
            audit_provider_call("delete", PROFILE_ID, "Microsoft.Cdn/profiles", AuditOutcome.FAILURE)

        assert caplog.records[-1].levelname == "WARNING"
        assert caplog.records[-1].operation == "delete"
