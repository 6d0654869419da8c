"""Tests for the HTTP embedding providers (requests.post is mocked)."""

from unittest.mock import MagicMock, patch

import pytest
import requests

from clipkeep.errors import (
    DecodingError,
    EmbeddingTimeoutError,
    InvalidAPIKeyError,
    InvalidURLError,
    NetworkError,
    RefusedConnectionError,
    ServerError,
    ServiceUnavailableError,
)
from clipkeep.providers import get_registry
from clipkeep.providers.embeddings import (
    CLOUD_TIMEOUT,
    LOCAL_TIMEOUT,
    GoogleEmbedding,
    LocalEmbedding,
    OpenAIEmbedding,
    normalize_base_url,
)

POST = "clipkeep.providers.embeddings.requests.post"


def _response(status: int = 200, body=None, *, bad_json: bool = False) -> MagicMock:
    response = MagicMock()
    response.status_code = status
    if bad_json:
        response.json.side_effect = ValueError("Expecting value")
    else:
        response.json.return_value = body
    return response


class TestRegistry:

    def test_all_providers_registered(self):
        assert set(get_registry().list_embedding_providers()) >= {"local", "google", "openai"}

    def test_create_from_params(self):
        provider = get_registry().create_embedding("openai", {"api_key": "k", "model": "m"})
        assert isinstance(provider, OpenAIEmbedding)
        assert provider.model == "m"

    def test_unknown_provider(self):
        with pytest.raises(ValueError, match="Unknown embedding provider"):
            get_registry().create_embedding("cohere")


class TestNormalizeBaseUrl:

    def test_adds_http_scheme(self):
        assert normalize_base_url("localhost:8080/embedding") == "http://localhost:8080/embedding"

    def test_keeps_https(self):
        assert normalize_base_url(" https://emb.local/x ") == "https://emb.local/x"

    def test_rejects_missing_host(self):
        with pytest.raises(InvalidURLError):
            normalize_base_url("")

    def test_rejects_whitespace(self):
        with pytest.raises(InvalidURLError):
            normalize_base_url("local host:8080")


class TestLocalEmbedding:

    def test_request_shape(self):
        with patch(POST, return_value=_response(200, {"embedding": [0.1, 0.2]})) as post:
            vector = LocalEmbedding("localhost:8080/embedding").embed("hello")
        assert vector == [0.1, 0.2]
        args, kwargs = post.call_args
        assert args[0] == "http://localhost:8080/embedding"
        assert kwargs["json"] == {"content": "hello"}
        assert kwargs["timeout"] == LOCAL_TIMEOUT

    def test_503_is_service_unavailable(self):
        with patch(POST, return_value=_response(503)):
            with pytest.raises(ServiceUnavailableError) as exc:
                LocalEmbedding().embed("x")
        assert exc.value.provider == "Local"

    def test_other_status_is_server_error(self):
        with patch(POST, return_value=_response(500)):
            with pytest.raises(ServerError) as exc:
                LocalEmbedding().embed("x")
        assert exc.value.code == 500
        assert str(exc.value) == "Server error (code: 500). Please try again later."

    def test_connection_failure_is_refused(self):
        with patch(POST, side_effect=requests.ConnectionError("refused")):
            with pytest.raises(RefusedConnectionError):
                LocalEmbedding().embed("x")

    def test_timeout(self):
        with patch(POST, side_effect=requests.Timeout("slow")):
            with pytest.raises(EmbeddingTimeoutError):
                LocalEmbedding().embed("x")

    def test_malformed_body(self):
        with patch(POST, return_value=_response(200, {"vector": [1.0]})):
            with pytest.raises(DecodingError):
                LocalEmbedding().embed("x")

    def test_invalid_json(self):
        with patch(POST, return_value=_response(200, bad_json=True)):
            with pytest.raises(DecodingError, match="Expecting value"):
                LocalEmbedding().embed("x")


class TestGoogleEmbedding:

    def test_requires_api_key(self):
        with patch(POST) as post:
            with pytest.raises(InvalidAPIKeyError):
                GoogleEmbedding(api_key="").embed("x")
        post.assert_not_called()

    def test_request_shape(self):
        body = {"embedding": {"values": [1.0, 2.0, 3.0]}}
        with patch(POST, return_value=_response(200, body)) as post:
            vector = GoogleEmbedding(api_key="k&ey", model="models/text-embedding-004").embed("hi")
        assert vector == [1.0, 2.0, 3.0]
        args, kwargs = post.call_args
        assert args[0] == (
            "https://generativelanguage.googleapis.com/v1beta/"
            "models/text-embedding-004:embedContent?key=k%26ey"
        )
        assert kwargs["json"] == {
            "model": "models/text-embedding-004",
            "content": {"parts": [{"text": "hi"}]},
        }
        assert kwargs["timeout"] == CLOUD_TIMEOUT

    def test_api_error_message_surfaces_as_network_error(self):
        body = {"error": {"message": "API key not valid"}}
        with patch(POST, return_value=_response(400, body)):
            with pytest.raises(NetworkError, match="API key not valid"):
                GoogleEmbedding(api_key="bad").embed("x")

    def test_error_without_message_is_server_error(self):
        with patch(POST, return_value=_response(502, bad_json=True)):
            with pytest.raises(ServerError):
                GoogleEmbedding(api_key="k").embed("x")

    def test_connection_failure_is_service_unavailable(self):
        with patch(POST, side_effect=requests.ConnectionError("down")):
            with pytest.raises(ServiceUnavailableError) as exc:
                GoogleEmbedding(api_key="k").embed("x")
        assert exc.value.provider == "Google"


class TestOpenAIEmbedding:

    def test_request_shape(self):
        body = {"data": [{"embedding": [0.5, 0.25]}, {"embedding": [9.0]}]}
        with patch(POST, return_value=_response(200, body)) as post:
            vector = OpenAIEmbedding(api_key="sk-test", model="text-embedding-3-small").embed("hi")
        assert vector == [0.5, 0.25]
        args, kwargs = post.call_args
        assert args[0] == "https://api.openai.com/v1/embeddings"
        assert kwargs["json"] == {"input": "hi", "model": "text-embedding-3-small"}
        assert kwargs["headers"]["Authorization"] == "Bearer sk-test"

    def test_requires_api_key(self):
        with pytest.raises(InvalidAPIKeyError):
            OpenAIEmbedding(api_key="").embed("x")

    def test_empty_data_is_decoding_error(self):
        with patch(POST, return_value=_response(200, {"data": []})):
            with pytest.raises(DecodingError, match="No embedding data found"):
                OpenAIEmbedding(api_key="k").embed("x")

    def test_api_error(self):
        body = {"error": {"message": "Rate limit reached"}}
        with patch(POST, return_value=_response(429, body)):
            with pytest.raises(NetworkError) as exc:
                OpenAIEmbedding(api_key="k").embed("x")
        assert exc.value.message == "OpenAI API Error: Rate limit reached"

    def test_timeout(self):
        with patch(POST, side_effect=requests.Timeout()):
            with pytest.raises(EmbeddingTimeoutError):
                OpenAIEmbedding(api_key="k").embed("x")
