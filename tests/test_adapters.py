"""Tests for the local-daemon and OpenAI-compatible provider adapters."""

from __future__ import annotations

import json
import unittest

import httpx

from ollama_gateway.adapters import (
    ExtractionStrategy,
    OllamaDaemonAdapter,
    OpenAICompatibleAdapter,
    first_match,
    map_transport_error,
)
from ollama_gateway.adapters.ollama_daemon import NO_THINK_DIRECTIVE
from ollama_gateway.config import GatewayConfig
from ollama_gateway.exceptions import (
    EmptyResponseError,
    GatewayTransportError,
    UpstreamError,
)
from ollama_gateway.models import ChatMessage


class RecordingTransport:
    """Route requests by path to canned responses and remember every request."""

    def __init__(self, routes: dict[str, httpx.Response | Exception]) -> None:
        self.routes = routes
        self.requests: list[httpx.Request] = []
        self.transport = httpx.MockTransport(self._handle)

    def _handle(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        outcome = self.routes.get(request.url.path)
        if outcome is None:
            return httpx.Response(404, json={"error": "not found"})
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    def bodies(self, path: str) -> list[dict]:
        return [
            json.loads(request.content)
            for request in self.requests
            if request.url.path == path
        ]

    def paths(self) -> list[str]:
        return [request.url.path for request in self.requests]


def _user(text: str) -> list[ChatMessage]:
    return [ChatMessage(role="user", content=text)]


class ExtractionStrategyTests(unittest.TestCase):
    """Validate ordered JSON field probing."""

    def test_first_match_respects_priority_and_skips_empty(self) -> None:
        strategies = (
            ExtractionStrategy("message.content", ("message", "content")),
            ExtractionStrategy("response", ("response",)),
        )
        self.assertEqual(
            first_match({"message": {"content": ""}, "response": "r"}, strategies),
            ("response", "r"),
        )
        self.assertEqual(
            first_match({"message": {"content": "m"}, "response": "r"}, strategies),
            ("message.content", "m"),
        )
        self.assertIsNone(first_match(["not", "a", "dict"], strategies))

    def test_list_indexes_are_bounds_checked(self) -> None:
        strategy = ExtractionStrategy("first", ("choices", 0, "text"))
        self.assertIsNone(strategy.extract({"choices": []}))
        self.assertEqual(strategy.extract({"choices": [{"text": "ok"}]}), "ok")

    def test_transport_errors_are_mapped_to_readable_text(self) -> None:
        request = httpx.Request("GET", "http://localhost:11434/api/tags")
        error = map_transport_error(
            httpx.ConnectError("connection refused", request=request),
            "http://localhost:11434",
        )
        self.assertIsInstance(error, GatewayTransportError)
        self.assertIn("Unable to connect", str(error))
        timeout = map_transport_error(
            httpx.ReadTimeout("slow", request=request), "http://localhost:11434"
        )
        self.assertIn("timed out", str(timeout))


class OllamaDaemonAdapterTests(unittest.IsolatedAsyncioTestCase):
    """Validate think translation and the chat/generate fallback."""

    async def test_reachable_daemon_returns_content_unmodified(self) -> None:
        recorder = RecordingTransport(
            {"/api/chat": httpx.Response(200, json={"message": {"content": " Hi! "}})}
        )
        adapter = OllamaDaemonAdapter(recorder.transport)

        text = await adapter.complete(GatewayConfig(), _user("hi"), "llama3", False)

        self.assertEqual(text, " Hi! ")
        (body,) = recorder.bodies("/api/chat")
        self.assertEqual(body["model"], "llama3")
        self.assertFalse(body["stream"])
        self.assertEqual(body["messages"][-1]["content"], f"hi {NO_THINK_DIRECTIVE}")
        self.assertNotIn("options", body)

    async def test_think_attaches_reasoning_hint_and_leaves_content(self) -> None:
        recorder = RecordingTransport(
            {"/api/chat": httpx.Response(200, json={"message": {"content": "deep"}})}
        )
        adapter = OllamaDaemonAdapter(recorder.transport)
        messages = [
            ChatMessage(role="system", content="be brief"),
            ChatMessage(role="user", content="why?"),
        ]

        await adapter.complete(GatewayConfig(), messages, "qwen3", True)

        (body,) = recorder.bodies("/api/chat")
        self.assertEqual(body["options"], {"reasoning": {"effort": "medium"}})
        self.assertEqual(
            [message["content"] for message in body["messages"]], ["be brief", "why?"]
        )

    async def test_flat_response_field_is_accepted_from_chat(self) -> None:
        recorder = RecordingTransport(
            {"/api/chat": httpx.Response(200, json={"response": "flat"})}
        )
        adapter = OllamaDaemonAdapter(recorder.transport)

        text = await adapter.complete(GatewayConfig(), _user("hi"), "llama3", False)

        self.assertEqual(text, "flat")
        self.assertEqual(recorder.paths(), ["/api/chat"])

    async def test_empty_chat_falls_back_to_flattened_generate(self) -> None:
        recorder = RecordingTransport(
            {
                "/api/chat": httpx.Response(200, json={"message": {"content": ""}}),
                "/api/generate": httpx.Response(200, json={"response": "from generate"}),
            }
        )
        adapter = OllamaDaemonAdapter(recorder.transport)
        messages = [
            ChatMessage(role="system", content="s"),
            ChatMessage(role="user", content="u"),
        ]

        text = await adapter.complete(GatewayConfig(), messages, "llama3", False)

        self.assertEqual(text, "from generate")
        (body,) = recorder.bodies("/api/generate")
        self.assertEqual(body["prompt"], f"system: s\nuser: u {NO_THINK_DIRECTIVE}")
        self.assertFalse(body["stream"])

    async def test_chat_failure_without_fallback_content_is_empty_response(self) -> None:
        recorder = RecordingTransport(
            {
                "/api/chat": httpx.Response(500, json={"error": "model not found"}),
                "/api/generate": httpx.Response(200, json={"response": ""}),
            }
        )
        adapter = OllamaDaemonAdapter(recorder.transport)

        with self.assertRaises(EmptyResponseError) as ctx:
            await adapter.complete(GatewayConfig(), _user("hi"), "ghost", False)

        self.assertEqual(ctx.exception.status, 500)
        self.assertIn("status=500", str(ctx.exception))
        self.assertIn("model not found", str(ctx.exception))
        self.assertIn("model not found", ctx.exception.body)

    async def test_generate_failure_surfaces_daemon_error(self) -> None:
        recorder = RecordingTransport(
            {
                "/api/chat": httpx.Response(200, json={}),
                "/api/generate": httpx.Response(400, json={"error": "bad prompt"}),
            }
        )
        adapter = OllamaDaemonAdapter(recorder.transport)

        with self.assertRaises(UpstreamError) as ctx:
            await adapter.complete(GatewayConfig(), _user("hi"), "llama3", False)

        self.assertEqual(str(ctx.exception), "bad prompt")
        self.assertEqual(ctx.exception.status, 400)

    async def test_unreachable_daemon_raises_transport_error(self) -> None:
        request = httpx.Request("POST", "http://localhost:11434/api/chat")
        recorder = RecordingTransport(
            {"/api/chat": httpx.ConnectError("refused", request=request)}
        )
        adapter = OllamaDaemonAdapter(recorder.transport)

        with self.assertRaises(GatewayTransportError):
            await adapter.complete(GatewayConfig(), _user("hi"), "llama3", False)

    async def test_list_models_reads_tags(self) -> None:
        recorder = RecordingTransport(
            {
                "/api/tags": httpx.Response(
                    200,
                    json={
                        "models": [
                            {"name": "llama3:latest", "model": "llama3:latest"},
                            {"name": "mistral:7b", "model": "mistral:7b"},
                        ]
                    },
                )
            }
        )
        adapter = OllamaDaemonAdapter(recorder.transport)

        names = await adapter.list_models(GatewayConfig())
        await adapter.aclose()

        self.assertEqual(names, ["llama3:latest", "mistral:7b"])

    async def test_closed_adapter_opens_a_fresh_sdk_client(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:  # noqa: ARG001
            return httpx.Response(
                200, json={"models": [{"name": "llama3", "model": "llama3"}]}
            )

        adapter = OllamaDaemonAdapter(httpx.MockTransport(handler))

        first = await adapter.list_models(GatewayConfig())
        await adapter.aclose()
        second = await adapter.list_models(GatewayConfig())
        await adapter.aclose()

        self.assertEqual(first, ["llama3"])
        self.assertEqual(second, ["llama3"])

    async def test_list_models_failure_status_is_upstream_error(self) -> None:
        recorder = RecordingTransport(
            {"/api/tags": httpx.Response(503, json={"error": "loading"})}
        )
        adapter = OllamaDaemonAdapter(recorder.transport)

        with self.assertRaises(UpstreamError):
            await adapter.list_models(GatewayConfig())
        await adapter.aclose()


class OpenAICompatibleAdapterTests(unittest.IsolatedAsyncioTestCase):
    """Validate the remote path, which has no secondary endpoint."""

    def _config(self, **overrides: object) -> GatewayConfig:
        values: dict[str, object] = {
            "provider": "openai",
            "base_url": "https://api.example.com/v1",
            "api_key": "sk-test",
        }
        values.update(overrides)
        return GatewayConfig.model_validate(values)

    async def test_completion_content_and_request_shape(self) -> None:
        recorder = RecordingTransport(
            {
                "/v1/chat/completions": httpx.Response(
                    200, json={"choices": [{"message": {"content": "hello"}}]}
                )
            }
        )
        adapter = OpenAICompatibleAdapter(recorder.transport)

        text = await adapter.complete(
            self._config(temperature=0.2), _user("hi"), "gpt-4o-mini", True
        )

        self.assertEqual(text, "hello")
        (request,) = recorder.requests
        self.assertEqual(request.headers["Authorization"], "Bearer sk-test")
        body = json.loads(request.content)
        self.assertEqual(
            body,
            {
                "model": "gpt-4o-mini",
                "messages": [{"role": "user", "content": "hi"}],
                "stream": False,
                "temperature": 0.2,
            },
        )

    async def test_default_temperature_and_no_credential(self) -> None:
        recorder = RecordingTransport(
            {
                "/v1/chat/completions": httpx.Response(
                    200, json={"choices": [{"message": {"content": "ok"}}]}
                )
            }
        )
        adapter = OpenAICompatibleAdapter(recorder.transport)

        await adapter.complete(self._config(api_key=None), _user("hi"), "m", False)

        (request,) = recorder.requests
        self.assertNotIn("Authorization", request.headers)
        self.assertEqual(json.loads(request.content)["temperature"], 0.6)

    async def test_connection_refused_is_transport_error_without_fallback(self) -> None:
        request = httpx.Request("POST", "https://api.example.com/v1/chat/completions")
        recorder = RecordingTransport(
            {"/v1/chat/completions": httpx.ConnectError("refused", request=request)}
        )
        adapter = OpenAICompatibleAdapter(recorder.transport)

        with self.assertRaises(GatewayTransportError) as ctx:
            await adapter.complete(self._config(), _user("hi"), "gpt-4o-mini", False)

        self.assertNotIsInstance(ctx.exception, EmptyResponseError)
        self.assertEqual(recorder.paths(), ["/v1/chat/completions"])

    async def test_provider_error_message_is_surfaced(self) -> None:
        recorder = RecordingTransport(
            {
                "/v1/chat/completions": httpx.Response(
                    401, json={"error": {"message": "Invalid API key"}}
                )
            }
        )
        adapter = OpenAICompatibleAdapter(recorder.transport)

        with self.assertRaises(UpstreamError) as ctx:
            await adapter.complete(self._config(), _user("hi"), "gpt-4o-mini", False)

        self.assertEqual(str(ctx.exception), "Invalid API key")
        self.assertEqual(ctx.exception.status, 401)

    async def test_missing_choices_is_empty_response(self) -> None:
        recorder = RecordingTransport(
            {"/v1/chat/completions": httpx.Response(200, json={"choices": []})}
        )
        adapter = OpenAICompatibleAdapter(recorder.transport)

        with self.assertRaises(EmptyResponseError) as ctx:
            await adapter.complete(self._config(), _user("hi"), "gpt-4o-mini", False)

        self.assertEqual(ctx.exception.status, 200)
        self.assertIn("choices", ctx.exception.body)

    async def test_list_models_returns_ids(self) -> None:
        recorder = RecordingTransport(
            {
                "/v1/models": httpx.Response(
                    200, json={"data": [{"id": "gpt-4o"}, {"id": "gpt-4o-mini"}]}
                )
            }
        )
        adapter = OpenAICompatibleAdapter(recorder.transport)

        names = await adapter.list_models(
            self._config(base_url="https://api.example.com")
        )

        self.assertEqual(names, ["gpt-4o", "gpt-4o-mini"])
        self.assertEqual(recorder.requests[0].headers["Authorization"], "Bearer sk-test")


if __name__ == "__main__":
    unittest.main()
