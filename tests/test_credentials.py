"""Tests for secretless credential enforcement.

These tests verify that the blob backend rejects credential secrets in the
environment and only builds managed identity or default credentials.
"""

import os
from unittest import mock

import pytest

from iacengine.credentials import (
    FORBIDDEN_CREDENTIAL_ENV_VARS,
    SecretlessViolationError,
    enforce_secretless,
    get_storage_credential,
)


class TestSecretlessEnforcement:
    """Tests for secretless enforcement."""

    def test_clean_environment_passes(self) -> None:
        """Test that enforcement passes with no credential env vars."""
        with mock.patch.dict(os.environ, {}, clear=True):
            enforce_secretless()

    @pytest.mark.parametrize("env_var", FORBIDDEN_CREDENTIAL_ENV_VARS)
    def test_forbidden_env_var_raises(self, env_var: str) -> None:
        """Test that each forbidden env var raises SecretlessViolationError."""
        with mock.patch.dict(os.environ, {env_var: "some-secret-value"}, clear=True):
            with pytest.raises(SecretlessViolationError) as exc_info:
                enforce_secretless()

        assert env_var in str(exc_info.value)

    def test_empty_value_is_ignored(self) -> None:
        """Test that an empty variable does not count as a secret."""
        with mock.patch.dict(os.environ, {"AZURE_CLIENT_SECRET": ""}, clear=True):
            enforce_secretless()


class TestGetStorageCredential:
    """Tests for the storage credential getter."""

    def test_user_assigned_identity(self) -> None:
        """Test that a client id selects a user-assigned managed identity."""
        with (
            mock.patch.dict(os.environ, {}, clear=True),
            mock.patch("iacengine.credentials.ManagedIdentityCredential") as mi_cls,
        ):
            credential = get_storage_credential("11111111-2222-3333")

        mi_cls.assert_called_once_with(client_id="11111111-2222-3333")
        assert credential is mi_cls.return_value

    def test_default_chain_without_environment_credential(self) -> None:
        """Test that the default chain never reads secrets from the environment."""
        with (
            mock.patch.dict(os.environ, {}, clear=True),
            mock.patch("iacengine.credentials.DefaultAzureCredential") as default_cls,
        ):
            credential = get_storage_credential()

        default_cls.assert_called_once_with(exclude_environment_credential=True)
        assert credential is default_cls.return_value

    def test_secret_blocks_credential_creation(self) -> None:
        """Test that no credential is built when a secret is present."""
        with (
            mock.patch.dict(os.environ, {"AZURE_PASSWORD": "hunter2"}, clear=True),
            mock.patch("iacengine.credentials.DefaultAzureCredential") as default_cls,
        ):
            with pytest.raises(SecretlessViolationError):
                get_storage_credential()

        default_cls.assert_not_called()
