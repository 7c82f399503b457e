import asyncio
import os
import tempfile
import unittest
from pathlib import Path


async def _collect(conn, n: int, timeout: float = 5.0):
    out = []

    async def _read():
        async for msg in conn.messages():
            out.append(msg)
            if len(out) >= n:
                return

    await asyncio.wait_for(_read(), timeout=timeout)
    return out


async def _wait_for(pred, timeout: float = 5.0) -> None:
    deadline = asyncio.get_running_loop().time() + timeout
    while not pred():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.01)


class TestTunnel(unittest.IsolatedAsyncioTestCase):
    async def test_broadcast_reaches_every_client_in_order(self) -> None:
        from agentrelay.contracts.v1 import LogLine
        from agentrelay.tunnel import TunnelClient, TunnelServer

        with tempfile.TemporaryDirectory() as td:
            server = TunnelServer()
            await server.start(Path(td) / "out.sock")
            clients = [await TunnelClient.connect(server.socket_path) for _ in range(4)]
            await _wait_for(lambda: len(server.connections()) == 4)

            for i in range(100):
                self.assertEqual(server.broadcast(LogLine(args=[str(i)])), 4)

            for c in clients:
                got = await _collect(c, 100)
                self.assertEqual([m.args[0] for m in got], [str(i) for i in range(100)])

            for c in clients:
                await c.close()
            await server.close()
            self.assertFalse(os.path.exists(os.path.join(td, "out.sock")))

    async def test_exclude_and_handler(self) -> None:
        from agentrelay.contracts.v1 import LogLine, UserInput
        from agentrelay.tunnel import TunnelClient, TunnelServer

        with tempfile.TemporaryDirectory() as td:
            received = []
            server = TunnelServer(on_message=lambda msg, conn: received.append((msg, conn.conn_id)))
            await server.start(Path(td) / "out.sock")
            a = await TunnelClient.connect(server.socket_path)
            b = await TunnelClient.connect(server.socket_path)
            await _wait_for(lambda: len(server.connections()) == 2)

            self.assertTrue(a.send(UserInput(content="from a")))
            await _wait_for(lambda: len(received) == 1)
            msg, conn_id = received[0]
            self.assertIsInstance(msg, UserInput)

            # Relay back out to everyone except the sender.
            self.assertEqual(server.broadcast(LogLine(args=["relayed"]), exclude=conn_id), 1)
            got = await _collect(b, 1)
            self.assertEqual(got[0].args, ["relayed"])

            await a.close()
            await b.close()
            await server.close()

    async def test_dead_client_does_not_stop_others(self) -> None:
        from agentrelay.contracts.v1 import LogLine
        from agentrelay.tunnel import TunnelClient, TunnelServer

        with tempfile.TemporaryDirectory() as td:
            server = TunnelServer()
            await server.start(Path(td) / "out.sock")
            dead = await TunnelClient.connect(server.socket_path)
            live = await TunnelClient.connect(server.socket_path)
            await _wait_for(lambda: len(server.connections()) == 2)

            await dead.close()
            await _wait_for(lambda: len(server.connections()) == 1)
            server.broadcast(LogLine(args=["still here"]))
            got = await _collect(live, 1)
            self.assertEqual(got[0].args, ["still here"])

            await live.close()
            await server.close()

    async def test_bind_failure_is_tunnel_unavailable_and_keeps_file(self) -> None:
        from agentrelay.errors import TunnelUnavailable
        from agentrelay.tunnel import TunnelServer

        with tempfile.TemporaryDirectory() as td:
            p = Path(td) / "not-a-socket"
            p.write_text("keep me", encoding="utf-8")
            server = TunnelServer()
            with self.assertRaises(TunnelUnavailable):
                await server.start(p)
            self.assertEqual(p.read_text(encoding="utf-8"), "keep me")

    async def test_stale_socket_is_replaced(self) -> None:
        import socket

        from agentrelay.tunnel import TunnelClient, TunnelServer

        with tempfile.TemporaryDirectory() as td:
            p = Path(td) / "out.sock"
            s = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
            s.bind(str(p))
            s.close()  # leaves the path behind with nobody listening
            self.assertTrue(p.exists())

            server = TunnelServer()
            await server.start(p)
            c = await TunnelClient.connect(p)
            await c.close()
            await server.close()

    async def test_live_socket_is_not_taken_over(self) -> None:
        from agentrelay.contracts.v1 import UserInput
        from agentrelay.errors import TunnelUnavailable
        from agentrelay.tunnel import TunnelClient, TunnelServer

        with tempfile.TemporaryDirectory() as td:
            p = Path(td) / "out.sock"
            received = []
            first = TunnelServer(on_message=lambda msg, conn: received.append(msg.content))
            await first.start(p)

            second = TunnelServer()
            with self.assertRaises(TunnelUnavailable):
                await second.start(p)
            self.assertFalse(second.running)
            await second.close()
            self.assertTrue(p.exists())

            c = await TunnelClient.connect(p)
            c.send(UserInput(content="still mine"))
            await _wait_for(lambda: received == ["still mine"])
            await c.close()
            await first.close()

    async def test_connect_to_missing_socket(self) -> None:
        from agentrelay.errors import TunnelUnavailable
        from agentrelay.tunnel import TunnelClient

        with tempfile.TemporaryDirectory() as td:
            with self.assertRaises(TunnelUnavailable):
                await TunnelClient.connect(Path(td) / "missing.sock")
            with self.assertRaises(TunnelUnavailable):
                await TunnelClient.connect("")


if __name__ == "__main__":
    unittest.main()
