"""
Embedding providers over HTTP.

- LocalEmbedding: a self-hosted embedding server (e.g. llama.cpp's
  /embedding endpoint) taking {"content": text}
- GoogleEmbedding: Gemini embedContent API
- OpenAIEmbedding: OpenAI /v1/embeddings API

All three raise the shared EmbeddingError taxonomy. Transport timeouts
become EmbeddingTimeoutError; failed connections become
RefusedConnectionError for the local server and ServiceUnavailableError
for the cloud services.
"""

import logging
from urllib.parse import quote, urlparse

import requests

from ..errors import (
    DecodingError,
    EmbeddingTimeoutError,
    InvalidAPIKeyError,
    InvalidURLError,
    NetworkError,
    RefusedConnectionError,
    ServerError,
    ServiceUnavailableError,
)
from .base import get_registry

logger = logging.getLogger(__name__)

LOCAL_TIMEOUT = 10
CLOUD_TIMEOUT = 30

GOOGLE_API_BASE = "https://generativelanguage.googleapis.com/v1beta"
OPENAI_EMBEDDINGS_URL = "https://api.openai.com/v1/embeddings"


def normalize_base_url(base_url: str) -> str:
    """Trim the configured URL and prefix http:// when no scheme is given.

    Raises InvalidURLError if the result has no host.
    """
    url = base_url.strip()
    if not url.startswith(("http://", "https://")):
        url = "http://" + url
    parsed = urlparse(url)
    if not parsed.netloc or any(c.isspace() for c in url):
        raise InvalidURLError()
    return url


def _post_json(
    provider: str,
    url: str,
    payload: dict,
    *,
    timeout: float,
    headers: dict | None = None,
    local: bool = False,
) -> requests.Response:
    """POST JSON and translate transport failures into embedding errors."""
    try:
        return requests.post(url, json=payload, headers=headers, timeout=timeout)
    except requests.Timeout as e:
        raise EmbeddingTimeoutError() from e
    except requests.ConnectionError as e:
        if local:
            raise RefusedConnectionError() from e
        raise ServiceUnavailableError(provider) from e
    except (requests.exceptions.InvalidURL, requests.exceptions.MissingSchema) as e:
        raise InvalidURLError() from e
    except requests.RequestException as e:
        raise NetworkError(str(e)) from e


def _api_error_message(response: requests.Response) -> str | None:
    """Extract {"error": {"message": ...}} from an error body, if present."""
    try:
        body = response.json()
    except ValueError:
        return None
    if isinstance(body, dict):
        error = body.get("error")
        if isinstance(error, dict) and isinstance(error.get("message"), str):
            return error["message"]
    return None


def _raise_for_cloud_status(provider: str, response: requests.Response) -> None:
    if 200 <= response.status_code < 300:
        return
    message = _api_error_message(response)
    if message is not None:
        raise NetworkError(f"{provider} API Error: {message}")
    raise ServerError(response.status_code)


def _as_vector(values) -> list[float]:
    if not isinstance(values, list):
        raise TypeError(f"expected a list of numbers, got {type(values).__name__}")
    return [float(v) for v in values]


class LocalEmbedding:
    """
    Embedding provider for a local HTTP server.

    Request:  POST {base_url}  {"content": text}
    Response: {"embedding": [float, ...]}
    """

    name = "Local"

    def __init__(self, base_url: str = "http://localhost:8080/embedding"):
        self.base_url = base_url

    def embed(self, text: str) -> list[float]:
        url = normalize_base_url(self.base_url)
        response = _post_json(
            self.name, url, {"content": text},
            timeout=LOCAL_TIMEOUT, local=True,
        )
        if response.status_code == 503:
            raise ServiceUnavailableError(self.name)
        if not 200 <= response.status_code < 300:
            raise ServerError(response.status_code)
        try:
            return _as_vector(response.json()["embedding"])
        except (ValueError, KeyError, TypeError) as e:
            raise DecodingError(f"Failed to decode local response: {e}") from e


class GoogleEmbedding:
    """
    Embedding provider using Google's Gemini embedContent API.

    Request:  POST {api_base}/{model}:embedContent?key={api_key}
              {"model": model, "content": {"parts": [{"text": text}]}}
    Response: {"embedding": {"values": [float, ...]}}
    """

    name = "Google"

    def __init__(
        self,
        api_key: str = "",
        model: str = "models/text-embedding-004",
        api_base: str = GOOGLE_API_BASE,
    ):
        self.api_key = api_key
        self.model = model
        self.api_base = api_base.rstrip("/")

    def _url(self) -> str:
        model = quote(self.model, safe="/")
        key = quote(self.api_key, safe="")
        return f"{self.api_base}/{model}:embedContent?key={key}"

    def embed(self, text: str) -> list[float]:
        if not self.api_key:
            raise InvalidAPIKeyError()
        payload = {
            "model": self.model,
            "content": {"parts": [{"text": text}]},
        }
        response = _post_json(self.name, self._url(), payload, timeout=CLOUD_TIMEOUT)
        _raise_for_cloud_status(self.name, response)
        try:
            return _as_vector(response.json()["embedding"]["values"])
        except (ValueError, KeyError, TypeError) as e:
            raise DecodingError(f"Failed to decode Google response: {e}") from e


class OpenAIEmbedding:
    """
    Embedding provider using the OpenAI embeddings API.

    Request:  POST /v1/embeddings  {"input": text, "model": model}
              Authorization: Bearer {api_key}
    Response: {"data": [{"embedding": [float, ...]}, ...]}; first entry used
    """

    name = "OpenAI"

    def __init__(
        self,
        api_key: str = "",
        model: str = "text-embedding-3-small",
        url: str = OPENAI_EMBEDDINGS_URL,
    ):
        self.api_key = api_key
        self.model = model
        self.url = url

    def embed(self, text: str) -> list[float]:
        if not self.api_key:
            raise InvalidAPIKeyError()
        headers = {"Authorization": f"Bearer {self.api_key}"}
        response = _post_json(
            self.name, self.url, {"input": text, "model": self.model},
            timeout=CLOUD_TIMEOUT, headers=headers,
        )
        _raise_for_cloud_status(self.name, response)
        try:
            data = response.json()["data"]
        except (ValueError, KeyError, TypeError) as e:
            raise DecodingError(f"Failed to decode OpenAI response: {e}") from e
        if not data:
            raise DecodingError("No embedding data found in response")
        try:
            return _as_vector(data[0]["embedding"])
        except (KeyError, TypeError, ValueError) as e:
            raise DecodingError(f"Failed to decode OpenAI response: {e}") from e


# Register providers
_registry = get_registry()
_registry.register_embedding("local", LocalEmbedding)
_registry.register_embedding("google", GoogleEmbedding)
_registry.register_embedding("openai", OpenAIEmbedding)
