import asyncio
import unittest


def _request(rid: str = "p1", kind: str = "input", timeout_ms=None):
    from agentrelay.kernel.prompts import build_prompt_request

    req = build_prompt_request(kind, "Proceed?", timeout_ms=timeout_ms)
    return req.model_copy(update={"id": rid})


class TestFirstWins(unittest.IsolatedAsyncioTestCase):
    async def test_first_finisher_wins_and_losers_are_cancelled(self) -> None:
        from agentrelay.kernel.arbitration import first_wins

        cancelled = []

        async def slow():
            try:
                await asyncio.sleep(10)
            except asyncio.CancelledError:
                cancelled.append("slow")
                raise

        async def fast():
            await asyncio.sleep(0.01)
            return "yes"

        name, value = await first_wins({"slow": slow(), "fast": fast()})
        self.assertEqual((name, value), ("fast", "yes"))
        self.assertEqual(cancelled, ["slow"])

    async def test_timeout(self) -> None:
        from agentrelay.errors import PromptTimeout
        from agentrelay.kernel.arbitration import first_wins

        with self.assertRaises(PromptTimeout):
            await first_wins({"never": asyncio.sleep(10)}, timeout=0.05)


class TestPromptArbiter(unittest.IsolatedAsyncioTestCase):
    async def test_remote_answer_wins_and_local_is_cancelled(self) -> None:
        from agentrelay.contracts.v1 import PromptResponse
        from agentrelay.kernel.arbitration import PendingPromptTable, PromptArbiter

        published = []
        local_cancelled = asyncio.Event()

        async def local(_req):
            try:
                await asyncio.sleep(10)
            except asyncio.CancelledError:
                local_cancelled.set()
                raise

        table = PendingPromptTable()
        arbiter = PromptArbiter(table, published.append, local=local)
        task = asyncio.create_task(arbiter.ask(_request("p1")))
        await asyncio.sleep(0.01)
        self.assertIn("p1", table)
        self.assertEqual(published[0].type, "prompt_request")

        self.assertTrue(table.handle_response(PromptResponse(id="p1", value="from gui"), source="gui"))
        answer = await task
        self.assertEqual((answer.value, answer.source), ("from gui", "gui"))
        self.assertTrue(local_cancelled.is_set())
        self.assertEqual(len(table), 0)

        # A second answer for the same id is ignored.
        self.assertFalse(table.handle_response(PromptResponse(id="p1", value="late")))
        answered = [m for m in published if getattr(m, "kind", "") == "prompt_answered"]
        self.assertEqual(len(answered), 1)
        self.assertEqual(answered[0].payload["source"], "gui")

    async def test_local_answer_wins(self) -> None:
        from agentrelay.kernel.arbitration import PendingPromptTable, PromptArbiter

        async def local(_req):
            return "typed"

        table = PendingPromptTable()
        arbiter = PromptArbiter(table, lambda m: None, local=local)
        answer = await arbiter.ask(_request("p2"))
        self.assertEqual((answer.value, answer.source), ("typed", "terminal"))
        self.assertEqual(len(table), 0)

    async def test_simultaneous_answers_resolve_exactly_once(self) -> None:
        from agentrelay.contracts.v1 import PromptResponse
        from agentrelay.kernel.arbitration import PendingPromptTable, PromptArbiter

        for i in range(20):
            table = PendingPromptTable()
            published = []
            ready = asyncio.Event()

            async def local(_req):
                await ready.wait()
                return "local"

            arbiter = PromptArbiter(table, published.append, local=local)
            rid = f"race{i}"
            task = asyncio.create_task(arbiter.ask(_request(rid)))
            await asyncio.sleep(0)
            await asyncio.sleep(0)
            ready.set()
            table.handle_response(PromptResponse(id=rid, value="remote"), source="tunnel")
            answer = await task

            self.assertIn(answer.value, ("local", "remote"))
            self.assertEqual(len(table), 0)
            answered = [m for m in published if getattr(m, "kind", "") == "prompt_answered"]
            self.assertEqual(len(answered), 1)
            self.assertEqual(answered[0].payload["value"], answer.value)

    async def test_timeout_clears_table(self) -> None:
        from agentrelay.errors import PromptTimeout
        from agentrelay.kernel.arbitration import PendingPromptTable, PromptArbiter

        table = PendingPromptTable()
        arbiter = PromptArbiter(table, lambda m: None)
        with self.assertRaises(PromptTimeout) as cm:
            await arbiter.ask(_request("p3", timeout_ms=50))
        self.assertIn("50ms", cm.exception.message)
        self.assertEqual(len(table), 0)

    async def test_error_response_and_cancel_all_reject(self) -> None:
        from agentrelay.contracts.v1 import PromptResponse
        from agentrelay.errors import PromptCancelled
        from agentrelay.kernel.arbitration import PendingPromptTable, PromptArbiter

        table = PendingPromptTable()
        counts = []
        table.add_listener(counts.append)
        arbiter = PromptArbiter(table, lambda m: None)

        task = asyncio.create_task(arbiter.ask(_request("p4")))
        await asyncio.sleep(0.01)
        table.handle_response(PromptResponse(id="p4", error="prompt cancelled"))
        with self.assertRaises(PromptCancelled):
            await task

        task = asyncio.create_task(arbiter.ask(_request("p5")))
        await asyncio.sleep(0.01)
        self.assertEqual(table.cancel_all("session closed"), 1)
        with self.assertRaises(PromptCancelled):
            await task
        self.assertEqual(len(table), 0)
        self.assertEqual(counts[-1], 0)
        self.assertIn(1, counts)

    async def test_duplicate_id_is_refused(self) -> None:
        from agentrelay.kernel.arbitration import PendingPromptTable

        table = PendingPromptTable()
        table.open("dup")
        with self.assertRaises(ValueError):
            table.open("dup")
        self.assertTrue(table.discard("dup"))
        self.assertFalse(table.discard("dup"))


if __name__ == "__main__":
    unittest.main()
