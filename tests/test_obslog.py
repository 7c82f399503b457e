import io
import json
import logging
import unittest


class TestObslog(unittest.TestCase):
    def tearDown(self) -> None:
        root = logging.getLogger()
        for h in list(root.handlers):
            if h.__class__ is logging.StreamHandler and isinstance(h.stream, io.StringIO):
                root.removeHandler(h)

    def test_lines_are_json_with_correlation_keys(self) -> None:
        from agentrelay.util.obslog import setup_root_json_logging

        buf = io.StringIO()
        setup_root_json_logging(component="test.run", level="info", stream=buf, force=True)
        log = logging.getLogger("agentrelay.test")
        log.info("spawned %s", "claude", extra={"run_id": "r1", "pid": 42, "role": ""})
        try:
            raise RuntimeError("boom")
        except RuntimeError:
            log.exception("relay failed", extra={"conn_id": 3})
        log.debug("not emitted")

        lines = [json.loads(x) for x in buf.getvalue().splitlines()]
        self.assertEqual(len(lines), 2)
        self.assertEqual(lines[0]["msg"], "spawned claude")
        self.assertEqual(lines[0]["component"], "test.run")
        self.assertEqual((lines[0]["run_id"], lines[0]["pid"]), ("r1", 42))
        self.assertNotIn("role", lines[0])
        self.assertTrue(lines[0]["ts"].endswith("Z"))
        self.assertEqual(lines[1]["level"], "ERROR")
        self.assertEqual(lines[1]["conn_id"], 3)
        self.assertIn("RuntimeError: boom", lines[1]["exc"])

    def test_repeat_setup_keeps_one_handler(self) -> None:
        from agentrelay.util.obslog import JsonlFormatter, setup_root_json_logging

        buf = io.StringIO()
        first = setup_root_json_logging(component="a", level="warning", stream=buf, force=True)
        second = setup_root_json_logging(component="a", level="debug")
        self.assertIs(first, second)
        self.assertEqual(first.level, logging.DEBUG)
        ours = [h for h in logging.getLogger().handlers if isinstance(h.formatter, JsonlFormatter)]
        self.assertEqual(len(ours), 1)

    def test_parse_level(self) -> None:
        from agentrelay.util.obslog import parse_level

        self.assertEqual(parse_level("debug"), logging.DEBUG)
        self.assertEqual(parse_level(""), logging.WARNING)
        self.assertEqual(parse_level("loud"), logging.WARNING)


if __name__ == "__main__":
    unittest.main()
