import os
import unittest
from unittest.mock import MagicMock, patch

from noteforge import providers
from noteforge.config import PROVIDER_TIMEOUT_S
from noteforge.errors import ProviderConfigError


@patch.object(providers, "console", MagicMock())
class TestInitializeChatModel(unittest.TestCase):
    def test_local_model_gets_json_mode_and_client_timeout(self):
        with patch.object(providers, "USE_API_LLM", False), patch.object(providers, "OllamaLLM") as ollama:
            model = providers.initialize_chat_model()
        self.assertIs(model, ollama.return_value)
        kwargs = ollama.call_args.kwargs
        self.assertEqual(kwargs["format"], "json")
        self.assertEqual(kwargs["client_kwargs"], {"timeout": PROVIDER_TIMEOUT_S})

    def test_api_model_has_timeout_and_no_client_retries(self):
        with patch.object(providers, "USE_API_LLM", True), patch.object(providers, "ChatGroq") as groq, \
                patch.dict(os.environ, {"GROQ_API_KEY": "test-key"}):
            providers.initialize_chat_model()
        kwargs = groq.call_args.kwargs
        self.assertEqual(kwargs["timeout"], PROVIDER_TIMEOUT_S)
        self.assertEqual(kwargs["max_retries"], 0)
        self.assertEqual(kwargs["model_kwargs"], {"response_format": {"type": "json_object"}})

    def test_api_model_without_key_is_a_config_error(self):
        with patch.object(providers, "USE_API_LLM", True), patch.object(providers, "ChatGroq") as groq, \
                patch.dict(os.environ, {"GROQ_API_KEY": "  "}):
            with self.assertRaises(ProviderConfigError):
                providers.initialize_chat_model()
        groq.assert_not_called()


if __name__ == "__main__":
    unittest.main()
