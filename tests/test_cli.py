import argparse
import json

import numpy as np
import pytest
from cardscan import cli
from cardscan.cli import build_parser, parse_roi
from cardscan.errors import EngineLoadError
from cardscan.frame_source import StaticFrameSource
from cardscan.profiler import profiler
from cardscan.scan_controller import ScanController


def test_parse_roi():
    assert parse_roi("0, 0.1, 0.8,0.15") == [0.0, 0.1, 0.8, 0.15]
    with pytest.raises(argparse.ArgumentTypeError):
        parse_roi("0,0,1")
    with pytest.raises(argparse.ArgumentTypeError):
        parse_roi("0,0,1,abc")
    with pytest.raises(argparse.ArgumentTypeError):
        parse_roi("0,0,1.5,0.2")


def test_parser_defaults_leave_config_untouched():
    args = build_parser().parse_args([])
    assert args.camera is None
    assert args.condition is None
    assert args.interval is None
    assert args.ocr_device == "auto"
    assert not args.no_visual


def test_parser_sources_are_exclusive():
    with pytest.raises(SystemExit):
        build_parser().parse_args(["--camera", "1", "--image", "card.jpg"])


def test_profiler_records_stages(tmp_path):
    output = tmp_path / "profile.json"
    profiler.enable(str(output))
    profiler.reset()
    try:
        with profiler.timer("ocr_roi"):
            pass
        with profiler.timer("ocr_roi"):
            pass
        profiler.save_results()
    finally:
        profiler.disable()
        profiler.reset()

    summary = json.loads(output.read_text())
    assert summary["stages"]["ocr_roi"]["count"] == 2
    assert summary["total_duration"] >= 0


class FailingRecognizer:
    is_ready = False

    def load(self):
        raise EngineLoadError("model download failed")


class NoRetriever:
    def retrieve(self, query, condition=None, printing=None):
        raise AssertionError("no search expected")


def test_main_reports_start_error(monkeypatch, capsys):
    def build(args, scan_config):
        frame_source = StaticFrameSource([np.zeros((20, 20, 3), dtype=np.uint8)])
        return ScanController(frame_source, FailingRecognizer(), NoRetriever(), scan_config=scan_config)

    monkeypatch.setattr(cli, "build_controller", build)
    exit_code = cli.main(["--image", "card.png", "--verbose", "--no-visual"])

    assert exit_code == 1
    err_lines = [line for line in capsys.readouterr().err.splitlines() if line.strip()]
    assert err_lines[-1] == "Error: model download failed"
