import unittest

from advisor.config import DEFAULT_CLOUDFLARE_MODEL, AdvisorSettings


class AdvisorSettingsTests(unittest.TestCase):
    def test_defaults_from_empty_environment(self) -> None:
        settings = AdvisorSettings.from_env({})

        self.assertEqual(settings.provider, "cloudflare")
        self.assertEqual(settings.cloudflare_model, DEFAULT_CLOUDFLARE_MODEL)
        self.assertEqual(settings.http_timeout_seconds, 20.0)
        self.assertEqual(settings.max_attempts, 3)
        self.assertEqual(settings.max_tokens, 900)
        self.assertEqual(settings.environment, "development")
        self.assertFalse(settings.provider_configured)

    def test_reads_provider_credentials(self) -> None:
        settings = AdvisorSettings.from_env(
            {
                "ADVISOR_PROVIDER": " Gemini ",
                "GEMINI_API_KEY": "key-1",
                "ADVISOR_HTTP_TIMEOUT_MS": "5000",
                "ADVISOR_MAX_ATTEMPTS": "2",
                "ADVISOR_CLOUDFLARE_API_TOKEN": "  ",
            }
        )

        self.assertEqual(settings.provider, "gemini")
        self.assertTrue(settings.provider_configured)
        self.assertIsNone(settings.cloudflare_api_token)
        self.assertEqual(settings.http_timeout_seconds, 5.0)
        self.assertEqual(settings.max_attempts, 2)

    def test_cloudflare_needs_token_and_account(self) -> None:
        self.assertFalse(AdvisorSettings(cloudflare_api_token="t").provider_configured)
        self.assertTrue(AdvisorSettings(cloudflare_api_token="t", cloudflare_account_id="a").provider_configured)

    def test_reads_app_environment(self) -> None:
        settings = AdvisorSettings.from_env({"APP_ENV": " Production "})

        self.assertEqual(settings.environment, "production")
        self.assertTrue(settings.is_production)
        self.assertFalse(AdvisorSettings().is_production)

    def test_rejects_invalid_values(self) -> None:
        cases = [
            {"ADVISOR_PROVIDER": "openai"},
            {"ADVISOR_HTTP_TIMEOUT_MS": "500"},
            {"ADVISOR_HTTP_TIMEOUT_MS": "fast"},
            {"ADVISOR_MAX_ATTEMPTS": "9"},
            {"ADVISOR_MAX_TOKENS": "0"},
            {"APP_ENV": "staging"},
        ]
        for environ in cases:
            with self.subTest(environ=environ):
                with self.assertRaises(ValueError):
                    AdvisorSettings.from_env(environ)


if __name__ == "__main__":
    unittest.main()
