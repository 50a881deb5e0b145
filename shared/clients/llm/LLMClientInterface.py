from abc import abstractmethod
from typing import AsyncIterator

import httpx

from shared.clients.HttpClientInterface import HttpClientInterface
from shared.helper.cancel_helper import CancelToken
from shared.helper.HelperConfig import HelperConfig
from shared.models.errors import LLMRequestError


class LLMClientInterface(HttpClientInterface):
    """Client for the external AI service: embeddings and chat generation.

    Chat generation comes in two modes: do_chat() returns the whole reply,
    do_chat_stream() yields text deltas as they arrive and stops as soon as
    the given CancelToken fires.
    """

    def __init__(self, helper_config: HelperConfig):
        super().__init__(helper_config=helper_config)

        # embedding config
        self.embed_model = helper_config.get_string_val(f"{self.get_client_type().upper()}_MODEL", default=self._get_default_embed_model())

        # chat / completion config
        self.chat_model = helper_config.get_string_val(f"{self.get_client_type().upper()}_CHAT_MODEL", default=self._get_default_chat_model())
        self.allowed_models = helper_config.get_list_val(f"{self.get_client_type().upper()}_ALLOWED_MODELS", default=[self.chat_model])

    ##########################################
    ################ GETTER ##################
    ##########################################

    ################ GENERAL ##################
    def _get_client_type(self) -> str:
        return "llm"

    @abstractmethod
    def _get_default_embed_model(self) -> str:
        """Returns the embedding model used when LLM_MODEL is not set."""
        pass

    @abstractmethod
    def _get_default_chat_model(self) -> str:
        """Returns the chat model used when LLM_CHAT_MODEL is not set."""
        pass

    def resolve_chat_model(self, requested: str | None) -> str:
        """Return the requested model if it is allowed, the default chat model otherwise.

        Args:
            requested (str | None): Model identifier sent by the client.

        Returns:
            str: The model to use.
        """
        if requested and requested.strip() in self.allowed_models:
            return requested.strip()
        if requested:
            self.logging.debug("Model %r is not allowed, falling back to %r.", requested, self.chat_model)
        return self.chat_model

    ################ ENDPOINTS ##################
    @abstractmethod
    def get_endpoint_embedding(self) -> str:
        """Returns the endpoint path for embedding requests (e.g. "/embeddings")."""
        pass

    @abstractmethod
    def _get_endpoint_chat(self) -> str:
        """Returns the endpoint path for chat/completion requests (e.g. "/chat/completions")."""
        pass

    ################ PAYLOAD BUILDER ##################
    @abstractmethod
    def get_embed_payload(self, texts: list[str]) -> dict:
        """Build the backend-specific request body for an embedding request.

        Args:
            texts (list[str]): The texts to embed.

        Returns:
            dict: JSON-serialisable request body (e.g. {"model": "...", "input": [...]}).
        """
        pass

    @abstractmethod
    def get_chat_payload(self, messages: list[dict], model: str, stream: bool = False, json_output: bool = False) -> dict:
        """Build the backend-specific request body for a chat/completion request.

        Args:
            messages (list[dict]): OpenAI-format messages
                (e.g. [{"role": "user", "content": "..."}]).
            model (str): The chat model to use.
            stream (bool): Request incremental deltas.
            json_output (bool): Ask the backend to answer with a JSON object.

        Returns:
            dict: JSON-serialisable request body.
        """
        pass

    ##########################################
    ################# OTHER ##################
    ##########################################

    @abstractmethod
    def extract_embeddings_from_response(self, response_data: dict) -> list[list[float]]:
        """Extract embedding vectors from a raw embedding API response.

        Response format differs by backend:
        - Ollama /api/embed: {"embeddings": [[...], [...]]}  - already ordered
        - OpenAI-compatible: {"data": [{"embedding": [...], "index": 0}]} - needs sorting

        Args:
            response_data (dict): The parsed JSON response body.

        Returns:
            list[list[float]]: Embedding vectors in the same order as the input texts.
        """
        pass

    @abstractmethod
    def extract_chat_response(self, response_data: dict) -> str:
        """Extract the assistant reply text from a raw chat API response.

        Args:
            response_data (dict): The parsed JSON response body.

        Returns:
            str: The assistant reply text.
        """
        pass

    @abstractmethod
    def parse_stream_line(self, line: str) -> tuple[str | None, bool]:
        """Parse one line of a streaming chat response.

        Args:
            line (str): A raw line of the response body.

        Returns:
            tuple[str | None, bool]: The text delta carried by the line (None if
                there is none) and whether the stream signalled its end.
        """
        pass

    def extract_error_message(self, response: httpx.Response) -> str:
        """Pull a human-readable message out of an error response.

        Understands {"error": {"message": "..."}} and {"error": "..."} bodies
        and falls back to the raw text.
        """
        try:
            data = response.json()
        except ValueError:
            data = None
        if isinstance(data, dict):
            error = data.get("error")
            if isinstance(error, dict) and error.get("message"):
                return str(error["message"])
            if isinstance(error, str) and error:
                return error
        text = (response.text or "").strip()
        return text[:200] or f"LLM request failed with status {response.status_code}."

    def _unreachable(self, error: httpx.HTTPError) -> LLMRequestError:
        self.logging.error("LLM service '%s' unreachable: %s", self.get_engine_name(), error)
        return LLMRequestError(f"LLM service unreachable: {error.__class__.__name__}")

    ##########################################
    ############### REQUESTS #################
    ##########################################

    async def do_embed(self, texts: list[str] | str) -> list[list[float]]:
        """Send an embedding request and return the extracted vectors.

        Args:
            texts (list[str] | str): One or more texts to embed.

        Returns:
            list[list[float]]: Embedding vectors in the same order as the inputs.

        Raises:
            LLMRequestError: If the backend answers with a non-200 status.
            ValueError: If the response does not contain valid embeddings.
        """
        texts = [texts] if isinstance(texts, str) else texts
        body = self.get_embed_payload(texts)
        try:
            response = await self.do_request(method="POST", endpoint=self.get_endpoint_embedding(), json=body)
        except httpx.HTTPError as e:
            raise self._unreachable(e) from e
        if response.status_code != 200:
            message = self.extract_error_message(response)
            self.logging.error("Embedding request failed: status %d, message: %s", response.status_code, message)
            raise LLMRequestError(message, status_code=response.status_code)
        return self.extract_embeddings_from_response(response.json())

    async def do_embed_text(self, text: str) -> list[float]:
        """Embed a single text and return its vector."""
        vectors = await self.do_embed([text])
        return vectors[0] if vectors else []

    async def do_chat(self, messages: list[dict], model: str | None = None, json_output: bool = False) -> str:
        """Send a chat/completion request and return the assistant reply text.

        Args:
            messages (list[dict]): OpenAI-format messages.
            model (str | None): Requested model, resolved against the allow-list.
            json_output (bool): Ask the backend to answer with a JSON object.

        Returns:
            str: The assistant reply text.

        Raises:
            LLMRequestError: If the backend answers with a non-200 status.
            ValueError: If the response does not contain a valid reply.
        """
        body = self.get_chat_payload(messages, model=self.resolve_chat_model(model), stream=False, json_output=json_output)
        try:
            response = await self.do_request(method="POST", endpoint=self._get_endpoint_chat(), json=body)
        except httpx.HTTPError as e:
            raise self._unreachable(e) from e
        if response.status_code != 200:
            message = self.extract_error_message(response)
            self.logging.error("Chat request failed: status %d, message: %s", response.status_code, message)
            raise LLMRequestError(message, status_code=response.status_code)
        return self.extract_chat_response(response.json())

    async def do_chat_stream(
        self,
        messages: list[dict],
        model: str | None = None,
        cancel_token: CancelToken | None = None,
    ) -> AsyncIterator[str]:
        """Stream a chat/completion and yield the text deltas in arrival order.

        The upstream connection is closed when the generator finishes, is
        closed by the consumer, or the cancel token fires.

        Args:
            messages (list[dict]): OpenAI-format messages.
            model (str | None): Requested model, resolved against the allow-list.
            cancel_token (CancelToken | None): Stops the stream when cancelled.

        Yields:
            str: Non-empty text deltas, unmodified.

        Raises:
            LLMRequestError: If the backend answers with a non-200 status.
        """
        body = self.get_chat_payload(messages, model=self.resolve_chat_model(model), stream=True)
        try:
            async with self.do_stream_request(method="POST", endpoint=self._get_endpoint_chat(), json=body) as response:
                if response.status_code != 200:
                    await response.aread()
                    message = self.extract_error_message(response)
                    self.logging.error("Streaming chat request failed: status %d, message: %s", response.status_code, message)
                    raise LLMRequestError(message, status_code=response.status_code)

                async for line in response.aiter_lines():
                    if cancel_token is not None and cancel_token.cancelled:
                        self.logging.debug("Chat stream aborted by cancel token.")
                        return
                    if not line.strip():
                        continue
                    delta, done = self.parse_stream_line(line)
                    if delta:
                        yield delta
                    if done:
                        return
        except httpx.HTTPError as e:
            raise self._unreachable(e) from e
