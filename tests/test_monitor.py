import asyncio
import io
import tempfile
import unittest
from pathlib import Path

from test_tunnel import _wait_for


class _Conn:
    def __init__(self):
        self.sent = []

    def send(self, msg) -> bool:
        self.sent.append(msg)
        return True


class TestMonitor(unittest.TestCase):
    def test_renders_and_skips_own_echo(self) -> None:
        from agentrelay.contracts.v1 import LogLine, UserInput, structured_event
        from agentrelay.ports.monitor import Monitor

        out = io.StringIO()
        m = Monitor(_Conn(), out=out, origin="monitor-1")
        m.handle(LogLine(args=["building"]))
        m.handle(UserInput(content="fan-out copy", origin="gui-s1"))
        m.handle(structured_event("user_terminal_input", content="mine", source="tunnel", origin="monitor-1"))
        m.handle(structured_event("user_terminal_input", content="theirs", source="gui", origin="gui-s1"))

        text = out.getvalue()
        self.assertIn("building", text)
        self.assertIn("theirs", text)
        self.assertNotIn("mine", text)
        self.assertNotIn("fan-out copy", text)

    def test_typed_lines_answer_open_prompt_then_become_input(self) -> None:
        from agentrelay.contracts.v1 import PromptChoice, PromptResponse, UserInput, structured_event
        from agentrelay.kernel.prompts import build_prompt_request
        from agentrelay.ports.monitor import Monitor

        conn = _Conn()
        out = io.StringIO()
        m = Monitor(conn, out=out, origin="monitor-2")
        req = build_prompt_request("select", "Database?", choices=[PromptChoice(name="sqlite"), PromptChoice(name="postgres", value="pg")])
        m.handle(req)
        self.assertIn("Database?", out.getvalue())

        self.assertFalse(m.submit_line("9"))
        self.assertEqual(conn.sent, [])
        self.assertTrue(m.submit_line("2"))
        self.assertIsInstance(conn.sent[-1], PromptResponse)
        self.assertEqual((conn.sent[-1].id, conn.sent[-1].value, conn.sent[-1].source), (req.id, "pg", "observer"))

        self.assertTrue(m.submit_line("carry on"))
        self.assertIsInstance(conn.sent[-1], UserInput)
        self.assertEqual(conn.sent[-1].origin, "monitor-2")
        self.assertFalse(m.submit_line("   "))

        # A prompt answered elsewhere is no longer pending here.
        req2 = build_prompt_request("confirm", "Ship?")
        m.handle(req2)
        m.handle(structured_event("prompt_answered", request_id=req2.id, prompt_kind="confirm", value=True, source="gui"))
        self.assertEqual(len(m.pending), 0)


class TestRunMonitor(unittest.IsolatedAsyncioTestCase):
    async def test_unreachable_socket_exits_1(self) -> None:
        from agentrelay.ports.monitor import run_monitor

        with tempfile.TemporaryDirectory() as td:
            self.assertEqual(await run_monitor(str(Path(td) / "nope.sock"), out=io.StringIO(), interactive=False), 1)

    async def test_prints_until_tunnel_closes(self) -> None:
        from agentrelay.contracts.v1 import LogLine
        from agentrelay.ports.monitor import run_monitor
        from agentrelay.tunnel import TunnelServer

        with tempfile.TemporaryDirectory() as td:
            server = TunnelServer()
            await server.start(Path(td) / "out.sock")
            out = io.StringIO()

            task = asyncio.create_task(run_monitor(server.socket_path, out=out, interactive=False))
            await _wait_for(lambda: len(server.connections()) == 1)
            server.broadcast(LogLine(args=["hello observer"]))
            await _wait_for(lambda: "hello observer" in out.getvalue())
            await server.close()
            self.assertEqual(await asyncio.wait_for(task, 5), 0)
            self.assertIn("(tunnel closed)", out.getvalue())


if __name__ == "__main__":
    unittest.main()
