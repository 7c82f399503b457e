import asyncio
import unittest


class _FakeWriter:
    def __init__(self, *, fail: bool = False, drain_delay: float = 0.0):
        self.data = bytearray()
        self.writes = 0
        self.close_calls = 0
        self._fail = fail
        self._drain_delay = drain_delay

    def write(self, data: bytes) -> None:
        if self._fail:
            raise BrokenPipeError("pipe closed")
        self.writes += 1
        self.data.extend(data)

    async def drain(self) -> None:
        if self._drain_delay:
            await asyncio.sleep(self._drain_delay)

    def close(self) -> None:
        self.close_calls += 1

    async def wait_closed(self) -> None:
        return None


class TestStdinGuard(unittest.IsolatedAsyncioTestCase):
    async def test_write_after_close_never_touches_stream(self) -> None:
        from agentrelay.errors import StdinClosed
        from agentrelay.runners.stdin_guard import StdinGuard

        w = _FakeWriter()
        g = StdinGuard(w, label="implementer")
        self.assertTrue((await g.write("a\n")).ok)
        await g.close("done")
        await g.close("again")

        res = await g.write("b\n")
        self.assertFalse(res.ok)
        self.assertIsInstance(res.error, StdinClosed)
        self.assertEqual(bytes(w.data), b"a\n")
        self.assertEqual(w.close_calls, 1)
        self.assertEqual(g.close_reason, "done")

    async def test_concurrent_writes_and_close(self) -> None:
        from agentrelay.runners.stdin_guard import StdinGuard

        w = _FakeWriter(drain_delay=0.001)
        g = StdinGuard(w)

        async def writer(i: int):
            return await g.write(f"{i}\n")

        tasks = [asyncio.create_task(writer(i)) for i in range(50)]
        await asyncio.sleep(0.005)
        await g.close("race")
        results = await asyncio.gather(*tasks)

        ok = [r for r in results if r.ok]
        failed = [r for r in results if not r.ok]
        self.assertEqual(len(ok) + len(failed), 50)
        self.assertTrue(g.is_closed())
        self.assertEqual(w.close_calls, 1)
        # Every successful write landed whole and nothing landed after close.
        self.assertEqual(w.writes, len(ok))
        self.assertEqual(bytes(w.data).count(b"\n"), len(ok))
        self.assertTrue(all(r.error is not None for r in failed))

    async def test_write_failure_closes_guard(self) -> None:
        from agentrelay.runners.stdin_guard import StdinGuard

        w = _FakeWriter(fail=True)
        g = StdinGuard(w)
        res = await g.write("x")
        self.assertFalse(res.ok)
        self.assertTrue(g.is_closed())
        self.assertEqual(w.close_calls, 1)

        res = await g.write("y")
        self.assertFalse(res.ok)
        self.assertEqual(w.close_calls, 1)


if __name__ == "__main__":
    unittest.main()
