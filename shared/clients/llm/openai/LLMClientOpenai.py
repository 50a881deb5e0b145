import json

from shared.clients.llm.LLMClientInterface import LLMClientInterface
from shared.helper.HelperConfig import HelperConfig
from shared.models.config import EnvConfig


class LLMClientOpenai(LLMClientInterface):
    """OpenAI-compatible backend (api.openai.com or any server speaking the same API)."""

    def __init__(self, helper_config: HelperConfig):
        super().__init__(helper_config=helper_config)
        self._base_url = self.get_config_val("BASE_URL", default="https://api.openai.com/v1", val_type="string")
        self._api_key = self.get_config_val("API_KEY", default=None, val_type="string")

    ##########################################
    ################ GETTER ##################
    ##########################################

    ################ GENERAL ##################
    def _get_engine_name(self) -> str:
        return "Openai"

    def _get_default_embed_model(self) -> str:
        return "text-embedding-3-small"

    def _get_default_chat_model(self) -> str:
        return "gpt-4o-mini"

    ################ CONFIG ##################
    def _get_required_config(self) -> list[EnvConfig]:
        return [
            EnvConfig(env_key="BASE_URL", val_type="string", default="https://api.openai.com/v1"),
            EnvConfig(env_key="API_KEY", val_type="string", default=None),
        ]

    ################ AUTH ##################
    def _get_auth_header(self) -> dict:
        return {"Authorization": f"Bearer {self._api_key}"}

    ################ ENDPOINTS ##################
    def _get_base_url(self) -> str:
        return self._base_url

    def _get_endpoint_healthcheck(self) -> str:
        return "/models"

    def get_endpoint_embedding(self) -> str:
        return "/embeddings"

    def _get_endpoint_chat(self) -> str:
        return "/chat/completions"

    ################ PAYLOAD BUILDER ##################
    def get_embed_payload(self, texts: list[str]) -> dict:
        return {"model": self.embed_model, "input": texts}

    def get_chat_payload(self, messages: list[dict], model: str, stream: bool = False, json_output: bool = False) -> dict:
        """Build the OpenAI chat completion request body.

        Args:
            messages (list[dict]): OpenAI-format messages.
            model (str): The chat model to use.
            stream (bool): Request server-sent deltas.
            json_output (bool): Request a JSON object reply.

        Returns:
            dict: {"model": "...", "messages": [...], "stream": bool}
        """
        payload: dict = {"model": model, "messages": messages, "stream": stream}
        if json_output:
            payload["response_format"] = {"type": "json_object"}
        return payload

    ##########################################
    ################# OTHER ##################
    ##########################################

    def extract_embeddings_from_response(self, response_data: dict) -> list[list[float]]:
        """Extract embedding vectors from an OpenAI /embeddings response.

        Raises:
            ValueError: If the response does not contain valid embeddings.
        """
        data = response_data.get("data")
        if not data:
            raise ValueError(
                "OpenAI response does not contain valid embeddings. "
                "Response keys: %s" % list(response_data.keys())
            )
        ordered = sorted(data, key=lambda item: item.get("index", 0))
        return [item.get("embedding") or [] for item in ordered]

    def extract_chat_response(self, response_data: dict) -> str:
        """Extract the assistant reply text from an OpenAI chat completion.

        Raises:
            ValueError: If the response does not contain a message.
        """
        choices = response_data.get("choices") or []
        content = (choices[0].get("message") or {}).get("content") if choices else None
        if content is None:
            raise ValueError(
                "OpenAI chat response does not contain a valid message. "
                "Response keys: %s" % list(response_data.keys())
            )
        return content

    def parse_stream_line(self, line: str) -> tuple[str | None, bool]:
        """Parse one server-sent event line ("data: {...}" / "data: [DONE]")."""
        if not line.startswith("data:"):
            return None, False
        data = line[len("data:"):].strip()
        if data == "[DONE]":
            return None, True
        try:
            chunk = json.loads(data)
        except json.JSONDecodeError:
            self.logging.debug("Skipping undecodable stream line: %r", data[:80])
            return None, False
        choices = chunk.get("choices") or []
        if not choices:
            return None, False
        delta = (choices[0].get("delta") or {}).get("content")
        return (delta if isinstance(delta, str) and delta else None), False
