import pytest

from app.core.errors import CredentialsExhausted
from app.services.credential_manager import CredentialManager
from app.services.request_translator import (
    BEARER_MODE,
    QUERY_MODE,
    build_proxy_request,
    is_json_content_type,
    placement_mode,
)

UPSTREAM = "https://generativelanguage.googleapis.com"


def translate(method="POST", path="/v1beta/models/gemini-pro:generateContent", params=(),
              headers=(), body=b"", keys=("secret",)):
    return build_proxy_request(
        method=method,
        path=path,
        params=list(params),
        headers=list(headers),
        body=body,
        credential_manager=CredentialManager(list(keys)),
        upstream_base_url=UPSTREAM,
    )


def header_values(context, name):
    return [v for k, v in context.headers if k.lower() == name]


class TestPlacementMode:
    @pytest.mark.parametrize("path", [
        "/v1beta/openai/chat/completions",
        "/v1beta/openai/models",
        "/v1beta/openai/embeddings",
        "/v1beta/models/text-embedding-004:embeddings",
    ])
    def test_bearer_paths(self, path):
        assert placement_mode(path) == BEARER_MODE

    @pytest.mark.parametrize("path", [
        "/v1beta/models",
        "/v1beta/models/gemini-pro:generateContent",
        "/v1beta/openai",
        "/v1beta/models/text-embedding-004:embedContent",
    ])
    def test_query_paths(self, path):
        assert placement_mode(path) == QUERY_MODE


class TestQueryMode:
    def test_key_added_as_query_parameter(self):
        context = translate(params=[("alt", "sse")])
        assert context.mode == QUERY_MODE
        assert context.params == [("alt", "sse"), ("key", "secret")]

    def test_inbound_authorization_is_removed(self):
        context = translate(headers=[("Authorization", "Bearer client"), ("AUTHORIZATION", "x")])
        assert header_values(context, "authorization") == []

    def test_inbound_key_parameter_is_replaced(self):
        context = translate(params=[("key", "client-key")])
        assert context.params == [("key", "secret")]


class TestBearerMode:
    def test_authorization_header_set(self):
        context = translate(
            path="/v1beta/openai/chat/completions",
            headers=[("authorization", "Bearer client")],
            params=[("foo", "bar")],
        )
        assert context.mode == BEARER_MODE
        assert header_values(context, "authorization") == ["Bearer secret"]
        assert context.params == [("foo", "bar")]
        assert all(k != "key" for k, _ in context.params)


class TestHeaders:
    def test_host_rewritten_and_content_length_dropped(self):
        context = translate(headers=[
            ("host", "localhost:1507"),
            ("content-length", "13"),
            ("x-goog-api-client", "genai-js"),
        ])
        assert header_values(context, "host") == ["generativelanguage.googleapis.com"]
        assert header_values(context, "content-length") == []
        assert header_values(context, "x-goog-api-client") == ["genai-js"]

    def test_hop_by_hop_headers_dropped(self):
        context = translate(headers=[
            ("Transfer-Encoding", "chunked"),
            ("Connection", "keep-alive, X-Hop"),
            ("Keep-Alive", "timeout=5"),
            ("X-Hop", "local"),
            ("TE", "trailers"),
            ("x-goog-api-client", "genai-js"),
        ])
        names = [k.lower() for k, _ in context.headers]
        assert names == ["host", "x-goog-api-client"]

    def test_multi_value_headers_preserved_in_order(self):
        context = translate(headers=[("x-trace", "1"), ("accept", "*/*"), ("x-trace", "2")])
        assert header_values(context, "x-trace") == ["1", "2"]

    def test_target_url_has_no_query_string(self):
        context = translate(path="/v1beta/models/gemini-pro:streamGenerateContent",
                            params=[("alt", "sse")])
        assert context.url == f"{UPSTREAM}/v1beta/models/gemini-pro:streamGenerateContent"


class TestBody:
    @pytest.mark.parametrize("method", ["GET", "HEAD"])
    def test_bodyless_methods_send_no_body(self, method):
        context = translate(method=method, body=b"ignored")
        assert context.body is None

    def test_json_body_forwarded_with_json_content_type(self):
        body = b'{"contents": [{"parts": [{"text": "hi"}]}]}'
        context = translate(headers=[("content-type", "application/json; charset=utf-8")], body=body)
        assert context.body == body
        assert header_values(context, "content-type") == ["application/json"]

    def test_malformed_json_still_forwarded(self):
        context = translate(headers=[("Content-Type", "application/json")], body=b"{broken")
        assert context.body == b"{broken"

    def test_non_json_body_forwarded_raw(self):
        body = b"\x00\x01binary"
        context = translate(headers=[("Content-Type", "application/octet-stream")], body=body)
        assert context.body == body
        assert header_values(context, "content-type") == ["application/octet-stream"]

    def test_json_subtype_keeps_its_content_type(self):
        body = b'{"displayName": "renamed"}'
        context = translate(method="PATCH", headers=[("content-type", "application/merge-patch+json")],
                            body=body)
        assert context.body == body
        assert header_values(context, "content-type") == ["application/merge-patch+json"]

    def test_body_without_content_type(self):
        context = translate(method="PUT", body=b"raw")
        assert context.body == b"raw"
        assert header_values(context, "content-type") == []


def test_json_content_type_detection():
    assert is_json_content_type("application/json")
    assert is_json_content_type("application/json; charset=utf-8")
    assert not is_json_content_type("application/merge-patch+json")
    assert not is_json_content_type("text/plain")
    assert not is_json_content_type(None)


def test_empty_store_raises_credentials_exhausted():
    with pytest.raises(CredentialsExhausted):
        translate(keys=())
