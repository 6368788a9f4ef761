from __future__ import annotations

import argparse
import contextlib
import io
import json
import os
import unittest
from pathlib import Path
import sys
from unittest.mock import patch

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

from relay_monitor.dispatcher import Dispatcher
from relay_monitor.main import _apply_overrides, build_dispatcher, build_parser, cli
from relay_monitor.signing import load_identities
from tests.helpers import TEST_ADDRESS, TEST_PRIVATE_KEY, test_config


class CliTests(unittest.TestCase):
    def test_parser_accepts_run_overrides(self) -> None:
        args = build_parser().parse_args(
            ["run", "--pacing", "1.5", "--budget", "280000", "--cost", "140000", "--rounds", "10", "--print-interval", "5"]
        )
        self.assertEqual(args.command, "run")
        self.assertEqual(args.pacing, 1.5)
        self.assertEqual(args.print_interval, 5.0)

    def test_apply_overrides(self) -> None:
        args = build_parser().parse_args(["run", "--pacing", "2", "--rounds", "3", "--window", "120"])
        cfg = _apply_overrides(test_config(), args)
        self.assertEqual(cfg.pacing_interval_seconds, 2.0)
        self.assertEqual(cfg.max_rounds, 3)
        self.assertEqual(cfg.window_size_seconds, 120.0)

    def test_apply_overrides_without_flags_keeps_config(self) -> None:
        cfg = test_config()
        self.assertIs(_apply_overrides(cfg, argparse.Namespace()), cfg)

    def test_apply_overrides_rejects_non_positive(self) -> None:
        args = build_parser().parse_args(["run", "--cost", "0"])
        with self.assertRaises(ValueError):
            _apply_overrides(test_config(), args)

    def test_run_without_identities_exits_2(self) -> None:
        with patch.dict(os.environ, {"RELAY_PRIVATE_KEYS": "", "PRIVATE_KEY": ""}):
            self.assertEqual(cli(["run", "--rounds", "1"]), 2)

    def test_relay_id_prints_signed_transaction(self) -> None:
        out = io.StringIO()
        with patch.dict(os.environ, {"RELAY_PRIVATE_KEYS": "", "PRIVATE_KEY": TEST_PRIVATE_KEY}):
            with contextlib.redirect_stdout(out):
                code = cli(["relay-id", "--height", "1000"])
        self.assertEqual(code, 0)
        payload = json.loads(out.getvalue())
        self.assertEqual(payload["from"], TEST_ADDRESS)
        self.assertEqual(payload["recovered"], TEST_ADDRESS)
        self.assertEqual(payload["deadlineBlockNumber"], 1410)
        self.assertTrue(payload["id"].startswith("0x"))

    def test_balance_prints_json(self) -> None:
        out = io.StringIO()
        with patch.dict(os.environ, {"RELAY_PRIVATE_KEYS": TEST_PRIVATE_KEY}):
            with patch("relay_monitor.clients_relay.get_json", return_value={"balance": "1500000000000000000"}):
                with contextlib.redirect_stdout(out):
                    code = cli(["balance"])
        self.assertEqual(code, 0)
        rows = json.loads(out.getvalue())
        self.assertEqual(rows[0]["address"], TEST_ADDRESS)
        self.assertEqual(rows[0]["relay_balance_eth"], "1.5")

    def test_build_dispatcher_wires_real_clients(self) -> None:
        cfg = test_config(private_keys=(TEST_PRIVATE_KEY,))
        dispatcher = build_dispatcher(cfg, load_identities(cfg.private_keys))
        self.assertIsInstance(dispatcher, Dispatcher)
        self.assertIsNotNone(dispatcher.funding)
        self.assertEqual(dispatcher.identities[0].address, TEST_ADDRESS)


if __name__ == "__main__":
    unittest.main()
