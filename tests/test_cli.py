"""
tests/test_cli.py
─────────────────
`nodescaler` command line: config validation paths and process signals.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import signal

import pytest

from nodescaler.__main__ import install_signal_handlers, main
from nodescaler.control_plane.scaler_service import ScalerService


@pytest.fixture
def restore_root_logging():
    root = logging.getLogger()
    saved_handlers, saved_level = root.handlers[:], root.level
    yield
    for handler in root.handlers[:]:
        root.removeHandler(handler)
    for handler in saved_handlers:
        root.addHandler(handler)
    root.setLevel(saved_level)


class TestCheckConfig:
    def test_prints_effective_config(self, tmp_path, capsys) -> None:
        path = tmp_path / "scaler.json"
        path.write_text(json.dumps({"minimum_nodes": 2, "service_key": "s3cret"}))

        assert main(["check-config", "--config", str(path)]) == 0

        out = json.loads(capsys.readouterr().out)
        assert out["minimum_nodes"] == 2
        assert out["service_key"] == "SET"

    def test_invalid_config_exit_code(self, tmp_path, capsys) -> None:
        path = tmp_path / "scaler.json"
        path.write_text(json.dumps({"cpu_lower_threshold": 90, "cpu_upper_threshold": 50}))

        assert main(["check-config", "--config", str(path)]) == 2
        assert "Invalid configuration" in capsys.readouterr().err

    def test_environment_is_default_source(self, monkeypatch, capsys) -> None:
        monkeypatch.setenv("SCALER_MINIMUM_NODES", "4")
        assert main(["check-config"]) == 0
        assert json.loads(capsys.readouterr().out)["minimum_nodes"] == 4


class TestRun:
    def test_refuses_to_start_without_service_key(self, tmp_path, restore_root_logging) -> None:
        path = tmp_path / "scaler.json"
        path.write_text(json.dumps({"minimum_nodes": 1}))

        assert main(["run", "--config", str(path), "--log-level", "WARNING"]) == 2

    def test_subcommand_required(self) -> None:
        with pytest.raises(SystemExit):
            main([])


@pytest.mark.skipif(not hasattr(signal, "SIGHUP"), reason="POSIX signals only")
class TestSignals:
    @pytest.mark.asyncio
    async def test_sighup_requests_deploy(self, config, cloud, prober) -> None:
        service = ScalerService(config, cloud, prober=prober)
        loop = asyncio.get_running_loop()
        installed = install_signal_handlers(loop, service)
        try:
            assert signal.SIGHUP in installed
            os.kill(os.getpid(), signal.SIGHUP)
            for _ in range(50):
                if service.deploy_requested:
                    break
                await asyncio.sleep(0.01)
            assert service.deploy_requested
        finally:
            for sig in installed:
                loop.remove_signal_handler(sig)

    @pytest.mark.asyncio
    async def test_sigterm_stops_loop(self, config, cloud, prober) -> None:
        service = ScalerService(config, cloud, prober=prober)
        loop = asyncio.get_running_loop()
        installed = install_signal_handlers(loop, service)
        try:
            assert signal.SIGTERM in installed
            runner = asyncio.create_task(service.run())
            await asyncio.sleep(0.03)
            os.kill(os.getpid(), signal.SIGTERM)
            await asyncio.wait_for(runner, timeout=1.0)
        finally:
            for sig in installed:
                loop.remove_signal_handler(sig)
            await service.aclose()
        assert service.monitor.tick_count >= 1
