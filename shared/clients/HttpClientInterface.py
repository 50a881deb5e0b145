from abc import abstractmethod
from contextlib import asynccontextmanager
from typing import AsyncIterator

import httpx
from httpx._types import QueryParamTypes

from shared.clients.ClientInterface import ClientInterface
from shared.helper.HelperConfig import HelperConfig


class HttpClientInterface(ClientInterface):
    """Base for clients that talk to a remote backend over HTTP via httpx."""

    def __init__(self, helper_config: HelperConfig):
        super().__init__(helper_config=helper_config)
        self.timeout = helper_config.get_number_val(f"{self.get_client_type().upper()}_TIMEOUT", default=60.0)
        self._client: httpx.AsyncClient | None = None

    ##########################################
    ################ GETTER ##################
    ##########################################

    ################ AUTH ##################
    @abstractmethod
    def _get_auth_header(self) -> dict:
        """
        Returns the authentication header for the backend server, if an API key is set.

        Returns:
            dict: A dictionary containing the auth data
        """
        pass

    ################ ENDPOINTS ##################
    @abstractmethod
    def _get_base_url(self) -> str:
        """
        Returns the base URL of the backend server from env variables

        Returns:
            str: The base URL of the backend server (e.g. "https://api.openai.com/v1")
        """
        pass

    @abstractmethod
    def _get_endpoint_healthcheck(self) -> str:
        """
        Returns the endpoint path for healthcheck requests.

        Returns:
            str: The endpoint path for healthcheck requests (e.g. "/models")
        """
        pass

    def _build_url(self, endpoint: str) -> str:
        endpoint = "/" + endpoint.strip().lstrip("/") if endpoint.strip() else ""
        return f"{self._get_base_url().rstrip('/')}{endpoint}"

    def _build_headers(self, additional_headers: dict | None = None) -> dict:
        # httpx sets Content-Type itself for json bodies
        headers: dict = {}
        headers.update(self._get_auth_header())
        if additional_headers:
            headers.update(additional_headers)
        return headers

    def _require_client(self) -> httpx.AsyncClient:
        if self._client is None:
            raise Exception("HTTP client not initialised. Call boot() before making requests.")
        return self._client

    ##########################################
    ############ CORE REQUESTS ###############
    ##########################################

    async def boot(self) -> None:
        """Initialise the HTTP client."""
        self._client = httpx.AsyncClient(timeout=self.timeout)

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client:
            await self._client.aclose()
            self._client = None

    async def do_healthcheck(self) -> bool:
        """Check if the backend is healthy by requesting its healthcheck endpoint."""
        try:
            response = await self.do_request(method="GET", endpoint=self._get_endpoint_healthcheck())
        except httpx.HTTPError as e:
            self.logging.warning("Healthcheck of %s client '%s' failed: %s", self.get_client_type(), self.get_engine_name(), e)
            return False
        return response.is_success

    async def do_request(
        self,
        method: str = "GET",
        json: dict | None = None,
        params: QueryParamTypes | None = None,
        endpoint: str = "",
        additional_headers: dict | None = None,
        raise_on_error: bool = False,
    ) -> httpx.Response:
        """Send an HTTP request to the backend.

        Args:
            method: HTTP method (GET, POST, ...).
            json: JSON-serialisable body.
            params: URL query parameters.
            endpoint: Path to append to the base URL (leading slash optional).
            additional_headers: Extra headers that override the defaults.
            raise_on_error: Raise if the backend answers with a non-2xx status.

        Returns:
            httpx.Response: The raw response.

        Raises:
            Exception: If the client is not initialised, or the response status is not 2xx and raise_on_error is set.
        """
        client = self._require_client()
        url = self._build_url(endpoint)
        response = await client.request(
            method,
            url=url,
            headers=self._build_headers(additional_headers),
            timeout=self.timeout,
            params=params,
            json=json,
        )

        if raise_on_error and response.status_code >= 300:
            self.logging.error(
                "Request to %s failed with status %d: %s",
                url,
                response.status_code,
                response.text[:200],
            )
            raise Exception(f"Request to {url} failed with status {response.status_code}")

        return response

    @asynccontextmanager
    async def do_stream_request(
        self,
        method: str = "POST",
        json: dict | None = None,
        endpoint: str = "",
        additional_headers: dict | None = None,
    ) -> AsyncIterator[httpx.Response]:
        """Open a streaming HTTP request. The connection is closed when the context exits.

        Args:
            method: HTTP method.
            json: JSON-serialisable body.
            endpoint: Path to append to the base URL.
            additional_headers: Extra headers that override the defaults.

        Yields:
            httpx.Response: The response whose body has not been read yet.
        """
        client = self._require_client()
        async with client.stream(
            method,
            self._build_url(endpoint),
            headers=self._build_headers(additional_headers),
            json=json,
            timeout=self.timeout,
        ) as response:
            yield response
