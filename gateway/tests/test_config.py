import os
import unittest
from unittest import mock

from duet.config import GatewayConfig, load_config_from_env


class ConfigTests(unittest.TestCase):
    def test_defaults_without_env(self):
        with mock.patch.dict(os.environ, {}, clear=True):
            config = load_config_from_env()

        self.assertEqual(config, GatewayConfig())
        self.assertEqual(config.max_identities, 2)
        self.assertEqual(config.default_page_size, 20)
        self.assertEqual(config.token_ttl_ms, 30 * 24 * 60 * 60 * 1000)

    def test_env_overrides(self):
        env = {
            "DUET_MAX_PAGE_SIZE": "40",
            "DUET_DEFAULT_PAGE_SIZE": "10",
            "DUET_PUBLIC_BASE_URL": "https://chat.example/",
            "DUET_LOG_JSON": "0",
            "DUET_EXPOSE_ERRORS": "1",
            "DUET_UPLOADS_DIR": "/srv/uploads",
        }
        with mock.patch.dict(os.environ, env, clear=True):
            config = load_config_from_env()

        self.assertEqual(config.max_page_size, 40)
        self.assertEqual(config.default_page_size, 10)
        self.assertEqual(config.public_base_url, "https://chat.example")
        self.assertFalse(config.log_json)
        self.assertTrue(config.expose_errors)
        self.assertEqual(config.uploads_dir, "/srv/uploads")

    def test_invalid_values_raise(self):
        cases = [
            {"DUET_MAX_IDENTITIES": "two"},
            {"DUET_MAX_IDENTITIES": "0"},
            {"DUET_TOKEN_TTL_S": "-5"},
            {"DUET_LOG_JSON": "yes"},
            {"DUET_DEFAULT_PAGE_SIZE": "200"},
        ]
        for env in cases:
            with self.subTest(env=env):
                with mock.patch.dict(os.environ, env, clear=True):
                    with self.assertRaises(ValueError):
                        load_config_from_env()


if __name__ == "__main__":
    unittest.main()
