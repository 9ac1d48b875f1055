import unittest
from unittest.mock import patch

from chat.adapters.openai_adapter import OpenAiAdapter
from chat.factory import build_llm_client


class LlmFactoryTests(unittest.TestCase):
    def test_build_openai_adapter(self) -> None:
        client = build_llm_client(provider="openai", model="gpt-test", api_key="k")
        self.assertIsInstance(client, OpenAiAdapter)
        self.assertEqual(client.model, "gpt-test")
        self.assertEqual(client.api_key, "k")

    def test_provider_and_model_default_from_env(self) -> None:
        with patch.dict(
            "os.environ",
            {
                "LLM_PROVIDER": "OpenAI",
                "OPENAI_MODEL": "gpt-env",
                "OPENAI_API_KEY": "k-env",
                "OPENAI_REASONING_EFFORT": "low",
            },
            clear=False,
        ):
            client = build_llm_client()

        self.assertIsInstance(client, OpenAiAdapter)
        self.assertEqual(client.model, "gpt-env")
        self.assertEqual(client.api_key, "k-env")
        self.assertEqual(client.reasoning_effort, "low")

    def test_build_invalid_provider_raises(self) -> None:
        with self.assertRaises(ValueError):
            _ = build_llm_client(provider="invalid")


if __name__ == "__main__":
    unittest.main()
