import asyncio
import contextlib
import io
import json
import os
import tempfile
import unittest
from unittest.mock import patch


class _ScriptedAsker:
    """Answers each prompt with the next scripted value and keeps the requests."""

    def __init__(self, *values):
        self.values = list(values)
        self.requests = []

    async def ask(self, request):
        from agentrelay.kernel.arbitration import PromptAnswer

        self.requests.append(request)
        return PromptAnswer(request_id=request.id, value=self.values.pop(0), source="gui")


class TestPromptHelpers(unittest.IsolatedAsyncioTestCase):
    async def test_input(self) -> None:
        from agentrelay.kernel.prompts import prompt_input

        asker = _ScriptedAsker("feature/login", None)
        self.assertEqual(await prompt_input(asker, "Branch?", timeout_ms=500), "feature/login")
        self.assertEqual(await prompt_input(asker, "Branch?", default="main"), "main")

        first, second = asker.requests
        self.assertEqual((first.kind, first.options.message, first.timeout_ms), ("input", "Branch?", 500))
        self.assertIsNone(first.options.default)
        self.assertEqual(second.options.default, "main")

    async def test_confirm_coerces_loose_answers(self) -> None:
        from agentrelay.kernel.prompts import prompt_confirm

        asker = _ScriptedAsker("yes", "false", None, 0)
        self.assertIs(await prompt_confirm(asker, "Ship?"), True)
        self.assertIs(await prompt_confirm(asker, "Ship?", default=True), False)
        self.assertIs(await prompt_confirm(asker, "Ship?", default=True), True)
        self.assertIs(await prompt_confirm(asker, "Ship?"), False)
        self.assertEqual(asker.requests[1].kind, "confirm")
        self.assertIs(asker.requests[1].options.default, True)

    async def test_select(self) -> None:
        from agentrelay.kernel.prompts import prompt_select

        asker = _ScriptedAsker("pg", None)
        choices = ["sqlite", ("Postgres", "pg")]
        self.assertEqual(await prompt_select(asker, "Database?", choices), "pg")
        self.assertEqual(await prompt_select(asker, "Database?", choices, default="sqlite"), "sqlite")

        req = asker.requests[0]
        self.assertEqual(req.kind, "select")
        self.assertEqual([(c.name, c.value) for c in req.options.choices], [("sqlite", "sqlite"), ("Postgres", "pg")])
        with self.assertRaises(ValueError):
            await prompt_select(asker, "Database?", [])

    async def test_checkbox(self) -> None:
        from agentrelay.contracts.v1 import PromptChoice
        from agentrelay.kernel.prompts import prompt_checkbox

        asker = _ScriptedAsker(["unit", "e2e"], None, "unit")
        choices = [PromptChoice(name="unit", checked=True), PromptChoice(name="e2e")]
        self.assertEqual(await prompt_checkbox(asker, "Suites?", choices), ["unit", "e2e"])
        self.assertEqual(await prompt_checkbox(asker, "Suites?", choices), [])
        self.assertEqual(await prompt_checkbox(asker, "Suites?", choices), ["unit"])
        self.assertTrue(asker.requests[0].options.choices[0].checked)
        with self.assertRaises(ValueError):
            await prompt_checkbox(asker, "Suites?", [])

    async def test_remote_answer_through_a_real_arbiter(self) -> None:
        from agentrelay.contracts.v1 import PromptRequest
        from agentrelay.kernel.arbitration import PendingPromptTable, PromptArbiter
        from agentrelay.kernel.prompts import prompt_select

        table = PendingPromptTable()
        published = []
        arbiter = PromptArbiter(table, published.append)

        task = asyncio.create_task(prompt_select(arbiter, "Region?", ["eu", "us"]))
        for _ in range(100):
            if published:
                break
            await asyncio.sleep(0.01)
        req = published[0]
        self.assertIsInstance(req, PromptRequest)
        self.assertTrue(table.resolve(req.id, "us", "observer"))
        self.assertEqual(await asyncio.wait_for(task, 5), "us")
        self.assertEqual(published[-1].kind, "prompt_answered")


class TestAskCommand(unittest.TestCase):
    def _run(self, argv, value):
        from agentrelay.cli import main
        from agentrelay.kernel.arbitration import PromptAnswer
        from agentrelay.kernel.context import TunnelContext
        from agentrelay.orchestrator.session import RunSession

        seen = []

        async def fake_ask(session, request):
            seen.append(request)
            return PromptAnswer(request_id=request.id, value=value, source="gui")

        old_home = os.environ.get("AGENTRELAY_HOME")
        try:
            with tempfile.TemporaryDirectory() as td:
                os.environ["AGENTRELAY_HOME"] = td
                out = io.StringIO()
                top_level = patch("agentrelay.orchestrator.session.get_tunnel_context", return_value=TunnelContext())
                answered = patch.object(RunSession, "ask", fake_ask)
                with top_level, answered, contextlib.redirect_stdout(out), contextlib.redirect_stderr(io.StringIO()):
                    code = main(argv)
        finally:
            if old_home is None:
                os.environ.pop("AGENTRELAY_HOME", None)
            else:
                os.environ["AGENTRELAY_HOME"] = old_home
        return code, out.getvalue(), seen

    def test_each_prompt_type_prints_the_json_answer(self) -> None:
        code, out, seen = self._run(["ask", "Ship?", "--type", "confirm", "--default", "y"], "no")
        self.assertEqual((code, json.loads(out)), (0, False))
        self.assertEqual((seen[0].kind, seen[0].options.default), ("confirm", True))

        code, out, seen = self._run(["ask", "Db?", "--type", "select", "--choice", "sqlite", "--choice", "Postgres=pg"], "pg")
        self.assertEqual((code, json.loads(out)), (0, "pg"))
        self.assertEqual([c.value for c in seen[0].options.choices], ["sqlite", "pg"])

        code, out, seen = self._run(["ask", "Suites?", "--type", "checkbox", "--choice", "unit", "--timeout", "2"], "unit")
        self.assertEqual((code, json.loads(out)), (0, ["unit"]))
        self.assertEqual(seen[0].timeout_ms, 2000)

        code, out, seen = self._run(["ask", "Name?"], "auth-service")
        self.assertEqual((code, json.loads(out)), (0, "auth-service"))
        self.assertEqual(seen[0].kind, "input")


if __name__ == "__main__":
    unittest.main()
