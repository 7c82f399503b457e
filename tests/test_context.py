import asyncio
import io
import os
import tempfile
import unittest
from pathlib import Path

from test_tunnel import _collect, _wait_for


class TestTunnelContext(unittest.TestCase):
    def test_resolve_and_child_env(self) -> None:
        from agentrelay.kernel.context import OUTPUT_SOCKET_ENV, resolve_tunnel_context

        ctx = resolve_tunnel_context({})
        self.assertFalse(ctx.active)
        env = ctx.child_env({"A": "1", OUTPUT_SOCKET_ENV: "/stale"})
        self.assertNotIn(OUTPUT_SOCKET_ENV, env)

        env = ctx.child_env({"A": "1"}, owned_socket="/tmp/x/output.sock")
        self.assertEqual(env[OUTPUT_SOCKET_ENV], "/tmp/x/output.sock")

        nested = resolve_tunnel_context({OUTPUT_SOCKET_ENV: " /run/parent.sock "})
        self.assertTrue(nested.active)
        self.assertEqual(nested.child_env({})[OUTPUT_SOCKET_ENV], "/run/parent.sock")

    def test_adapter_kind_resolution(self) -> None:
        from agentrelay.adapters import resolve_adapter_kind
        from agentrelay.kernel.context import TunnelContext
        from agentrelay.kernel.settings import Settings

        s = Settings()
        self.assertEqual(resolve_adapter_kind(TunnelContext(), s), "terminal")
        s.headless.enabled = True
        self.assertEqual(resolve_adapter_kind(TunnelContext(), s), "headless")
        # A parent tunnel wins over headless.
        self.assertEqual(resolve_adapter_kind(TunnelContext("/x.sock"), s), "tunnel")


class TestRunSession(unittest.IsolatedAsyncioTestCase):
    async def test_nested_session_reuses_parent_tunnel(self) -> None:
        from agentrelay.contracts.v1 import LogLine
        from agentrelay.kernel.context import OUTPUT_SOCKET_ENV, TunnelContext
        from agentrelay.kernel.settings import Settings
        from agentrelay.orchestrator.session import RunSession
        from agentrelay.tunnel import TunnelClient

        with tempfile.TemporaryDirectory() as td:
            top = await RunSession.open(
                context=TunnelContext(),
                settings=Settings(),
                tunnel=True,
                tunnel_path=str(Path(td) / "top.sock"),
                stream=io.StringIO(),
                interactive=False,
            )
            self.assertEqual(top.kind, "terminal")
            self.assertTrue(top.tunnel_socket)
            observer = await TunnelClient.connect(top.tunnel_socket)

            nested = await RunSession.open(
                context=TunnelContext(top.tunnel_socket),
                settings=Settings(),
                stream=io.StringIO(),
                interactive=False,
            )
            self.assertEqual(nested.kind, "tunnel")
            self.assertIsNone(nested.server)
            self.assertEqual(nested.child_env({})[OUTPUT_SOCKET_ENV], top.tunnel_socket)
            self.assertEqual(sorted(os.listdir(td)), ["top.sock"])

            await _wait_for(lambda: len(top.server.connections()) == 2)
            nested.log("from nested")
            got = await _collect(observer, 1)
            self.assertIsInstance(got[0], LogLine)
            self.assertEqual(got[0].args, ["from nested"])

            await nested.close()
            await observer.close()
            await top.close()
            await top.close()
            self.assertFalse(os.path.exists(os.path.join(td, "top.sock")))

    async def test_nested_prompt_is_answered_by_observer(self) -> None:
        from agentrelay.contracts.v1 import LogLine, PromptRequest, PromptResponse, StructuredEvent
        from agentrelay.kernel.context import TunnelContext
        from agentrelay.kernel.prompts import build_prompt_request
        from agentrelay.kernel.settings import Settings
        from agentrelay.orchestrator.session import RunSession
        from agentrelay.tunnel import TunnelClient

        with tempfile.TemporaryDirectory() as td:
            top = await RunSession.open(
                context=TunnelContext(),
                settings=Settings(),
                tunnel=True,
                tunnel_path=str(Path(td) / "top.sock"),
                stream=io.StringIO(),
                interactive=False,
            )
            observer = await TunnelClient.connect(top.tunnel_socket)
            nested = await RunSession.open(
                context=TunnelContext(top.tunnel_socket),
                settings=Settings(),
                stream=io.StringIO(),
                interactive=False,
            )
            await _wait_for(lambda: len(top.server.connections()) == 2)

            request = build_prompt_request("confirm", "Ship it?")
            ask = asyncio.create_task(nested.ask(request))

            async def answer_first_prompt():
                async for msg in observer.messages():
                    if isinstance(msg, PromptRequest):
                        observer.send(PromptResponse(id=msg.id, value=True, source="observer"))
                        return msg

            seen = await asyncio.wait_for(answer_first_prompt(), 5)
            self.assertEqual(seen.id, request.id)
            answer = await asyncio.wait_for(ask, 5)
            self.assertIs(answer.value, True)
            self.assertEqual(len(top.table), 0)
            self.assertEqual(len(nested.table), 0)

            # The answer is announced once, by the process that asked.
            nested.log("after the prompt")
            announced = []

            async def read_until_marker():
                async for msg in observer.messages():
                    if isinstance(msg, StructuredEvent) and msg.kind == "prompt_answered":
                        announced.append(msg.payload)
                    if isinstance(msg, LogLine) and msg.args == ["after the prompt"]:
                        return

            await asyncio.wait_for(read_until_marker(), 5)
            self.assertEqual(len(announced), 1)
            self.assertEqual(announced[0]["request_id"], request.id)
            self.assertEqual(announced[0]["source"], "observer")

            await nested.close()
            await observer.close()
            await top.close()

    async def test_ask_without_input_source_is_cancelled(self) -> None:
        from agentrelay.errors import PromptCancelled
        from agentrelay.kernel.context import TunnelContext
        from agentrelay.kernel.prompts import build_prompt_request
        from agentrelay.kernel.settings import Settings
        from agentrelay.orchestrator.session import RunSession

        session = await RunSession.open(
            context=TunnelContext(),
            settings=Settings(),
            tunnel=False,
            stream=io.StringIO(),
            interactive=False,
        )
        try:
            with self.assertRaises(PromptCancelled):
                await session.ask(build_prompt_request("input", "name?"))
        finally:
            await session.close()

    async def test_unreachable_parent_tunnel_falls_back_to_terminal(self) -> None:
        from agentrelay.kernel.context import TunnelContext
        from agentrelay.kernel.settings import Settings
        from agentrelay.orchestrator.session import RunSession

        with tempfile.TemporaryDirectory() as td:
            out = io.StringIO()
            session = await RunSession.open(
                context=TunnelContext(str(Path(td) / "gone.sock")),
                settings=Settings(),
                stream=out,
                interactive=False,
            )
            try:
                self.assertEqual(session.adapter.kind, "terminal")
                self.assertIsNone(session.server)
                self.assertIn("tunnel unavailable", out.getvalue())
            finally:
                await session.close()


if __name__ == "__main__":
    unittest.main()
