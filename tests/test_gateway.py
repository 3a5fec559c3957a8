"""End-to-end tests for the gateway facade, dispatcher, and model inventory."""

from __future__ import annotations

import json
import unittest

import httpx

from ollama_gateway.adapters import build_adapters
from ollama_gateway.config import GatewayConfig, Provider, Settings
from ollama_gateway.dispatcher import ChatDispatcher
from ollama_gateway.events.bus import EventBus
from ollama_gateway.exceptions import (
    EmptyResponseError,
    GatewayTransportError,
    RequestValidationError,
)
from ollama_gateway.gateway import Gateway
from ollama_gateway.inventory import ModelInventory
from ollama_gateway.launchers import DaemonLauncher
from ollama_gateway.models import ChatMessage


class FakeDaemonServer:
    """A tiny in-memory Ollama daemon served through ``httpx.MockTransport``."""

    def __init__(self, models: list[str] | None = None, reply: str = "Hello!") -> None:
        self.models = models if models is not None else ["llama3"]
        self.reply = reply
        self.chat_status = 200
        self.requests: list[tuple[str, dict | None]] = []
        self.transport = httpx.MockTransport(self._handle)

    def _handle(self, request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content) if request.content else None
        self.requests.append((request.url.path, body))
        if request.url.path == "/api/tags":
            return httpx.Response(
                200,
                json={"models": [{"name": name, "model": name} for name in self.models]},
            )
        if request.url.path == "/api/chat":
            if self.chat_status != 200:
                return httpx.Response(self.chat_status, json={"error": "model not found"})
            return httpx.Response(200, json={"message": {"content": self.reply}})
        if request.url.path == "/api/generate":
            return httpx.Response(200, json={"response": ""})
        if request.url.path == "/api/pull":
            return httpx.Response(
                200,
                content=(
                    b'{"status":"pulling manifest"}\n'
                    b'{"status":"success","total":100,"completed":100}\n'
                ),
            )
        return httpx.Response(404, json={"error": "not found"})

    def paths(self) -> list[str]:
        return [path for path, _ in self.requests]


class FakeLauncher(DaemonLauncher):
    """Record pulls and serves without touching the system."""

    def __init__(self) -> None:
        self.serve_calls: list[str] = []
        self.pull_calls: list[str] = []

    async def serve(self, executable: str) -> None:
        self.serve_calls.append(executable)

    async def pull(self, executable: str, model: str) -> int:  # noqa: ARG002
        self.pull_calls.append(model)
        return 0


def _gateway(server: FakeDaemonServer, launcher: FakeLauncher | None = None) -> Gateway:
    return Gateway(
        Settings(),
        transport=server.transport,
        launcher=launcher or FakeLauncher(),
        bus=EventBus(),
    )


class GatewayTests(unittest.IsolatedAsyncioTestCase):
    """Validate the UI-facing operations end to end."""

    async def test_local_chat_returns_daemon_content(self) -> None:
        server = FakeDaemonServer()
        launcher = FakeLauncher()
        async with _gateway(server, launcher) as gateway:
            text = await gateway.chat(
                [{"role": "user", "content": "hi"}], model="llama3", think=False
            )

        self.assertEqual(text, "Hello!")
        self.assertEqual(launcher.pull_calls, [])
        chat_bodies = [body for path, body in server.requests if path == "/api/chat"]
        self.assertEqual(chat_bodies[0]["messages"][-1]["content"], "hi /no_think")

    async def test_local_chat_prewarms_missing_model(self) -> None:
        server = FakeDaemonServer(models=[])
        launcher = FakeLauncher()
        async with _gateway(server, launcher) as gateway:
            await gateway.chat([{"role": "user", "content": "hi"}], model="mistral")

        self.assertEqual(launcher.pull_calls, ["mistral"])

    async def test_daemon_failure_without_content_is_empty_response(self) -> None:
        server = FakeDaemonServer()
        server.chat_status = 500
        async with _gateway(server) as gateway:
            with self.assertRaises(EmptyResponseError) as ctx:
                await gateway.chat([{"role": "user", "content": "hi"}], model="llama3")

        self.assertEqual(ctx.exception.status, 500)
        self.assertEqual(server.paths()[-2:], ["/api/chat", "/api/generate"])

    async def test_stream_chat_delivers_chunks_then_end(self) -> None:
        server = FakeDaemonServer(reply="A response longer than eight")
        async with _gateway(server) as gateway:
            handle = gateway.start_chat_stream(
                {"messages": [{"role": "user", "content": "hi"}], "model": "llama3"}
            )
            events = [event async for event in gateway.listen(handle)]

        self.assertEqual(events[-1].kind, "end")
        self.assertEqual(
            "".join(event.text for event in events if event.kind == "chunk"),
            "A response longer than eight",
        )

    async def test_stream_pull_delivers_progress_then_end(self) -> None:
        server = FakeDaemonServer()
        async with _gateway(server) as gateway:
            handle = gateway.start_pull("llama3")
            events = [event async for event in gateway.listen(handle)]

        self.assertEqual([event.kind for event in events], ["progress", "progress", "end"])
        self.assertEqual(
            [event.progress.percent for event in events if event.progress],
            [0.0, 100.0],
        )

    async def test_check_model_exists(self) -> None:
        server = FakeDaemonServer(models=["llama3", "mistral:7b"])
        async with _gateway(server) as gateway:
            self.assertTrue(await gateway.check_model_exists(model="mistral:7b"))
            self.assertFalse(await gateway.check_model_exists(model="mistral"))
            self.assertTrue(await gateway.check_model_exists(model=""))
            self.assertEqual(await gateway.list_models(), ["llama3", "mistral:7b"])

    async def test_model_override_is_checked_and_pulled_on_its_own_daemon(self) -> None:
        hosts: list[tuple[str, str]] = []

        def handler(request: httpx.Request) -> httpx.Response:
            hosts.append((request.url.host, request.url.path))
            if request.url.path == "/api/tags":
                names = ["m1"] if request.url.host == "other" else []
                return httpx.Response(
                    200, json={"models": [{"name": n, "model": n} for n in names]}
                )
            return httpx.Response(200, content=b'{"status":"success"}\n')

        config = {
            "provider": "ollama",
            "baseUrl": "http://localhost:11434",
            "models": [
                {"name": "m1", "provider": "ollama", "baseUrl": "http://other:11434"}
            ],
        }
        gateway = Gateway(
            Settings(),
            transport=httpx.MockTransport(handler),
            launcher=FakeLauncher(),
            bus=EventBus(),
        )
        async with gateway:
            self.assertTrue(await gateway.check_model_exists(config, "m1"))
            self.assertFalse(await gateway.check_model_exists(config, "m2"))
            handle = gateway.start_pull("m1", config)
            events = [event async for event in gateway.listen(handle)]

        self.assertEqual(events[-1].kind, "end")
        self.assertEqual(
            hosts,
            [
                ("other", "/api/tags"),
                ("localhost", "/api/tags"),
                ("other", "/api/pull"),
            ],
        )

    async def test_ensure_daemon_is_a_noop_for_remote_providers(self) -> None:
        server = FakeDaemonServer()
        launcher = FakeLauncher()
        async with _gateway(server, launcher) as gateway:
            self.assertTrue(await gateway.ensure_daemon({"provider": "openai"}))
            self.assertTrue(await gateway.ensure_daemon())

        self.assertEqual(launcher.serve_calls, [])

    async def test_invalid_config_mapping_is_rejected(self) -> None:
        server = FakeDaemonServer()
        async with _gateway(server) as gateway:
            with self.assertRaises(RequestValidationError):
                await gateway.list_models({"baseUrl": "not a url"})


class DispatcherTests(unittest.IsolatedAsyncioTestCase):
    """Validate routing, history trimming, and the remote path."""

    async def test_remote_dispatch_skips_prewarm_and_maps_transport_errors(self) -> None:
        calls: list[str] = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request.url.path)
            raise httpx.ConnectError("connection refused", request=request)

        transport = httpx.MockTransport(handler)
        launcher = FakeLauncher()
        gateway = Gateway(
            Settings(), transport=transport, launcher=launcher, bus=EventBus()
        )
        config = GatewayConfig(provider="openai", base_url="https://api.example.com/v1")

        with self.assertRaises(GatewayTransportError):
            await gateway.dispatcher.dispatch(
                config, [ChatMessage(role="user", content="hi")], "gpt-4o-mini", False
            )
        await gateway.aclose()

        self.assertEqual(calls, ["/v1/chat/completions"])
        self.assertEqual(launcher.pull_calls, [])

    async def test_history_is_trimmed_to_configured_cap(self) -> None:
        server = FakeDaemonServer()
        gateway = _gateway(server)
        config = GatewayConfig(max_context_messages=2)
        messages = [
            ChatMessage(role="user", content=f"m{index}") for index in range(5)
        ]

        await gateway.dispatcher.dispatch(config, messages, "llama3", True)
        await gateway.aclose()

        (body,) = [body for path, body in server.requests if path == "/api/chat"]
        self.assertEqual(
            [message["content"] for message in body["messages"]], ["m3", "m4"]
        )

    async def test_per_model_override_routes_to_remote_provider(self) -> None:
        paths: list[str] = []

        def handler(request: httpx.Request) -> httpx.Response:
            paths.append(str(request.url))
            return httpx.Response(
                200, json={"choices": [{"message": {"content": "remote"}}]}
            )

        adapters = build_adapters(httpx.MockTransport(handler))
        dispatcher = ChatDispatcher(adapters, supervisor=None)  # type: ignore[arg-type]
        config = GatewayConfig.model_validate(
            {
                "models": [
                    {
                        "name": "gpt-4o",
                        "provider": "openai",
                        "baseUrl": "https://api.example.com/v1",
                    }
                ]
            }
        )

        text = await dispatcher.dispatch(
            config, [{"role": "user", "content": "hi"}], "gpt-4o", False
        )

        self.assertEqual(text, "remote")
        self.assertEqual(paths, ["https://api.example.com/v1/chat/completions"])
        self.assertIs(
            dispatcher.adapter_for(config.for_model("gpt-4o")),
            adapters[Provider.OPENAI],
        )


class InventoryTests(unittest.IsolatedAsyncioTestCase):
    """Validate exact-name membership checks."""

    async def test_missing_inventory_means_absent(self) -> None:
        server = FakeDaemonServer(models=[])
        inventory = ModelInventory(build_adapters(server.transport))

        with self.assertLogs("ollama_gateway.inventory", level="INFO") as logs:
            exists = await inventory.model_exists(GatewayConfig(), "llama3")

        self.assertFalse(exists)
        self.assertTrue(any("model.check" in line for line in logs.output))

    async def test_empty_name_is_trivially_present(self) -> None:
        server = FakeDaemonServer(models=[])
        inventory = ModelInventory(build_adapters(server.transport))

        self.assertTrue(await inventory.model_exists(GatewayConfig(), ""))
        self.assertEqual(server.requests, [])


if __name__ == "__main__":
    unittest.main()
