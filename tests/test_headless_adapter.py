import asyncio
import io
import json
import unittest


class TestHeadlessAdapter(unittest.IsolatedAsyncioTestCase):
    async def test_replay_live_output_and_inbound_input(self) -> None:
        import websockets

        from agentrelay.adapters import HeadlessAdapter, TerminalAdapter
        from agentrelay.contracts.v1 import LogLine, SessionInfo, UserInput

        frames: "asyncio.Queue[dict]" = asyncio.Queue()
        conns = []

        async def handler(ws, *args):
            conns.append(ws)
            try:
                async for raw in ws:
                    await frames.put(json.loads(raw))
            except Exception:
                pass

        async def next_frame() -> dict:
            return await asyncio.wait_for(frames.get(), 5)

        async with websockets.serve(handler, "127.0.0.1", 0) as server:
            port = server.sockets[0].getsockname()[1]
            term = io.StringIO()
            adapter = HeadlessAdapter(
                f"ws://127.0.0.1:{port}/agentrelay",
                SessionInfo(command="run", plan_id="p1", pid=99),
                wrapped=TerminalAdapter(term),
                reconnect_interval_s=0.05,
            )
            got = []
            adapter.set_user_input_handler(lambda msg, reply: got.append(msg))

            # Emitted before the GUI is reachable: must be replayed.
            adapter.send(LogLine(args=["early 1"]))
            adapter.send(LogLine(args=["early 2"]))
            await adapter.start()

            first = await next_frame()
            self.assertEqual(first["type"], "session_info")
            self.assertEqual(first["plan_id"], "p1")
            self.assertEqual((await next_frame())["type"], "replay_start")
            replayed = [await next_frame(), await next_frame()]
            self.assertEqual([f["seq"] for f in replayed], [0, 1])
            self.assertEqual(replayed[1]["message"]["args"], ["early 2"])
            self.assertEqual((await next_frame())["type"], "replay_end")

            adapter.send(LogLine(args=["live"]))
            live = await next_frame()
            self.assertEqual(live["type"], "output")
            self.assertEqual(live["seq"], 2)

            await conns[0].send(json.dumps({"type": "user_input", "content": "hi from gui", "origin": "gui-s1"}))
            await conns[0].send("garbage that is dropped")
            await conns[0].send(json.dumps({"type": "prompt_response", "id": "q1", "value": 3}))
            for _ in range(100):
                if len(got) == 2:
                    break
                await asyncio.sleep(0.02)
            self.assertIsInstance(got[0], UserInput)
            self.assertEqual(got[0].content, "hi from gui")
            self.assertEqual(got[1].value, 3)

            # Everything was mirrored to the local terminal too.
            self.assertIn("early 1", term.getvalue())
            self.assertIn("live", term.getvalue())

            # Reconnect replays the full history.
            await conns[0].close()
            frame = await next_frame()
            while frame["type"] != "session_info":
                frame = await next_frame()
            self.assertEqual((await next_frame())["type"], "replay_start")
            seqs = []
            while True:
                f = await next_frame()
                if f["type"] == "replay_end":
                    break
                seqs.append(f["seq"])
            self.assertEqual(seqs, [0, 1, 2])

            await adapter.close()
            self.assertFalse(adapter.connected)

    async def test_buffer_is_capped_and_keeps_newest(self) -> None:
        from agentrelay.adapters import HeadlessAdapter, TerminalAdapter
        from agentrelay.contracts.v1 import LogLine, SessionInfo

        adapter = HeadlessAdapter(
            "ws://127.0.0.1:1/agentrelay",
            SessionInfo(),
            wrapped=TerminalAdapter(io.StringIO()),
            max_buffer_bytes=1024,
        )
        for i in range(200):
            adapter.send(LogLine(args=[f"line {i}"]))
        self.assertLess(adapter.history_size, 200)
        self.assertGreater(adapter.history_size, 0)

        adapter.send(LogLine(args=["x" * 5000]))
        self.assertEqual(adapter.history_size, 1)

    async def test_unreachable_gui_warns_once_and_keeps_terminal_output(self) -> None:
        from agentrelay.adapters import HeadlessAdapter, TerminalAdapter
        from agentrelay.contracts.v1 import LogLine, SessionInfo

        term = io.StringIO()
        adapter = HeadlessAdapter(
            "ws://127.0.0.1:1/agentrelay",
            SessionInfo(),
            wrapped=TerminalAdapter(term),
            reconnect_interval_s=0.05,
        )
        await adapter.start()
        adapter.send(LogLine(args=["still visible"]))
        for _ in range(100):
            if "not reachable" in term.getvalue():
                break
            await asyncio.sleep(0.02)
        await asyncio.sleep(0.2)
        await adapter.close()

        text = term.getvalue()
        self.assertIn("still visible", text)
        self.assertEqual(text.count("not reachable"), 1)


if __name__ == "__main__":
    unittest.main()
