"""Tests for authentication module."""

import unittest
import uuid

from apipacer._auth import (
    ApiKeyAuthProvider,
    AuthenticationError,
    AuthProvider,
    create_auth_provider,
)
from apipacer._config import APIPACER, AuthConfig


class TestAuthenticationError(unittest.TestCase):
    """Tests for AuthenticationError exception."""

    def test_creation_with_message_only(self):
        """Should create error with message only."""
        error = AuthenticationError("Test error")
        self.assertEqual(error.message, "Test error")
        self.assertIsNone(error.cause)
        self.assertEqual(str(error), "Test error")

    def test_creation_with_message_and_cause(self):
        """Should create error with message and cause."""
        cause = ValueError("Original error")
        error = AuthenticationError("Test error", cause=cause)
        self.assertEqual(error.cause, cause)


class TestApiKeyAuthProvider(unittest.TestCase):
    """Tests for ApiKeyAuthProvider."""

    def test_is_auth_provider(self):
        self.assertIsInstance(ApiKeyAuthProvider("key"), AuthProvider)

    def test_default_header(self):
        """Should send the key in the API-Key header by default."""
        auth = ApiKeyAuthProvider("my-key")
        self.assertEqual(auth.get_auth_headers(), {"API-Key": "my-key"})

    def test_custom_header(self):
        auth = ApiKeyAuthProvider("my-key", header_name="X-Api-Key")
        self.assertEqual(auth.get_auth_headers(), {"X-Api-Key": "my-key"})

    def test_uuid_key_is_sent_in_canonical_form(self):
        key = uuid.UUID("0f3e9b2c-7a61-4d2e-9c1f-2b8a5d6e7f10")
        auth = ApiKeyAuthProvider(key)
        self.assertEqual(auth.get_auth_headers(), {"API-Key": "0f3e9b2c-7a61-4d2e-9c1f-2b8a5d6e7f10"})

    def test_empty_key_is_rejected(self):
        with self.assertRaises(AssertionError):
            ApiKeyAuthProvider("")

    def test_repr_masks_key(self):
        """Should never print the full key."""
        auth = ApiKeyAuthProvider("super-secret-1234")
        self.assertNotIn("super-secret", repr(auth))
        self.assertIn("1234", repr(auth))


class TestCreateAuthProvider(unittest.TestCase):
    """Tests for create_auth_provider()."""

    def setUp(self):
        APIPACER.reset()

    def tearDown(self):
        APIPACER.reset()

    def test_returns_none_without_key(self):
        self.assertIsNone(create_auth_provider(config=AuthConfig()))

    def test_explicit_key_wins_over_config(self):
        auth = create_auth_provider(api_key="explicit", config=AuthConfig(api_key="configured"))
        self.assertEqual(auth.get_auth_headers(), {"API-Key": "explicit"})

    def test_uses_config_header_name(self):
        auth = create_auth_provider(config=AuthConfig(api_key="configured", header_name="X-Key"))
        self.assertEqual(auth.get_auth_headers(), {"X-Key": "configured"})

    def test_falls_back_to_global_config(self):
        APIPACER.configure(auth={"api_key": "global-key"})
        auth = create_auth_provider()
        self.assertEqual(auth.get_auth_headers(), {"API-Key": "global-key"})


if __name__ == "__main__":
    unittest.main()
