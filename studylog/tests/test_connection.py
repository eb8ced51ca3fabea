import unittest
from unittest.mock import patch

from studylog.client_cache import ClientCache
from studylog.connection import (
    Connected,
    ConnectionManager,
    Failed,
    Loading,
    NeedsSetup,
)
from studylog.db import InMemoryBackendClient
from studylog.errors import BackendError, ErrorKind
from studylog.identity import InMemoryIdentityClient, save_user_settings


class ConnectionManagerTests(unittest.TestCase):
    def setUp(self):
        self.identity_client = InMemoryIdentityClient()
        self.backends = {}
        self.cache = ClientCache(
            factory=lambda url, key: self.backends.setdefault(url, InMemoryBackendClient())
        )
        self.identity = self.identity_client.add_user("u1@example.com", "pw", user_id="u1")
        self.manager = ConnectionManager(self.identity_client, self.cache)

    def _configure(self, url="https://u1.example.com", key="anon"):
        return save_user_settings(
            self.identity_client.settings_table, self.identity.id, url, key
        )

    def test_initial_state_is_loading(self):
        self.assertIsInstance(self.manager.state, Loading)
        self.assertEqual(self.manager.state.status, "loading")

    def test_no_identity_stays_loading(self):
        state = self.manager.set_identity(None)
        self.assertIsInstance(state, Loading)
        self.assertIsNone(self.manager.user_id)

    def test_identity_without_settings_needs_setup(self):
        state = self.manager.set_identity(self.identity)
        self.assertIsInstance(state, NeedsSetup)
        self.assertEqual(state.status, "needs_setup")

    def test_identity_with_settings_is_connected(self):
        settings = self._configure()
        state = self.manager.set_identity(self.identity)
        self.assertIsInstance(state, Connected)
        self.assertEqual(state.status, "connected")
        self.assertEqual(state.settings, settings)
        self.assertIs(state.client, self.backends["https://u1.example.com"])
        self.assertIs(state.client, self.cache.get("https://u1.example.com", "anon"))

    def test_settings_read_failure_is_error(self):
        failure = BackendError(ErrorKind.BACKEND, "connection reset by peer")
        with patch.object(
            self.identity_client.settings_table, "select", side_effect=failure
        ):
            state = self.manager.set_identity(self.identity)
        self.assertIsInstance(state, Failed)
        self.assertEqual(state.status, "error")
        self.assertEqual(state.message, "connection reset by peer")
        self.assertIs(state.error, failure)

    def test_error_only_clears_on_refresh(self):
        failure = BackendError(ErrorKind.BACKEND, "timeout")
        with patch.object(
            self.identity_client.settings_table, "select", side_effect=failure
        ):
            self.manager.set_identity(self.identity)
        self.assertIsInstance(self.manager.state, Failed)

        self.assertIsInstance(self.manager.refresh(), NeedsSetup)

    def test_refresh_after_setup_connects(self):
        self.assertIsInstance(self.manager.set_identity(self.identity), NeedsSetup)
        self._configure()
        first = self.manager.refresh()
        second = self.manager.refresh()
        self.assertIsInstance(first, Connected)
        self.assertEqual(first, second)
        self.assertIs(first.client, second.client)

    def test_unopenable_backend_is_error(self):
        self._configure()

        def refuse(url, key):
            raise BackendError(ErrorKind.CONFIGURATION, "Invalid URL")

        manager = ConnectionManager(self.identity_client, ClientCache(factory=refuse))
        state = manager.set_identity(self.identity)
        self.assertIsInstance(state, Failed)
        self.assertEqual(state.message, "Invalid URL")
        self.assertEqual(state.error.kind, ErrorKind.CONFIGURATION)

    def test_stored_database_url_is_never_opened(self):
        self._configure(url="sqlite:////tmp/someone-else.db")
        state = self.manager.set_identity(self.identity)
        self.assertIsInstance(state, Failed)
        self.assertEqual(state.error.kind, ErrorKind.CONFIGURATION)
        self.assertEqual(len(self.cache), 0)
        self.assertEqual(self.backends, {})

    def test_reset_discards_cached_client(self):
        self._configure()
        self.manager.set_identity(self.identity)
        self.assertIn(("https://u1.example.com", "anon"), self.cache)

        self.manager.reset()

        self.assertIsInstance(self.manager.state, Loading)
        self.assertIsNone(self.manager.identity)
        self.assertNotIn(("https://u1.example.com", "anon"), self.cache)


if __name__ == "__main__":
    unittest.main()
