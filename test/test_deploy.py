"""Tests for the deploy helper."""

import dataclasses
import subprocess
from unittest.mock import patch

import pytest

import deploy
from config import Settings


def test_env_lists_every_setting():
    env = deploy.render_env()
    for f in dataclasses.fields(Settings):
        assert f"{f.name.upper()}=" in env


def test_env_uses_defaults_and_placeholders():
    lines = deploy.render_env().splitlines()
    assert "BOT_TOKEN=YOUR_BOT_TOKEN_FROM_BOTFATHER" in lines
    assert "SERIAL_PORT=/dev/ttyUSB0" in lines
    assert "IMAGE_MAX_WIDTH=384" in lines
    assert "MOCK_PRINTER=false" in lines
    assert "# PRINTER_PROFILE=" in lines


def test_unit_runs_bot_from_checkout(tmp_path):
    unit = deploy.render_unit(tmp_path, "pi", "/dev/ttyACM0")
    assert f"WorkingDirectory={tmp_path}" in unit
    assert f"ExecStart={tmp_path}/venv/bin/python bot.py" in unit
    assert "User=pi" in unit
    assert "Wants=dev-ttyACM0.device" in unit


def test_prepare_creates_dirs_env_and_unit(tmp_path):
    unit_path = deploy.prepare(tmp_path, "pi")

    assert (tmp_path / "logs").is_dir()
    assert (tmp_path / "tmp").is_dir()
    assert (tmp_path / ".env").read_text(encoding="utf-8") == deploy.render_env()
    assert unit_path == tmp_path / "print-bot.service"
    assert unit_path.exists()


def test_prepare_keeps_existing_env(tmp_path):
    (tmp_path / ".env").write_text("BOT_TOKEN=real\n", encoding="utf-8")
    deploy.prepare(tmp_path, "pi")
    assert (tmp_path / ".env").read_text(encoding="utf-8") == "BOT_TOKEN=real\n"


def test_install_service_enables_unit(tmp_path):
    with patch("deploy.sys.platform", "linux"), patch("deploy.subprocess.run") as run:
        deploy.install_service(tmp_path / "print-bot.service")
    commands = [call.args[0] for call in run.call_args_list]
    assert commands[0][:2] == ["sudo", "install"]
    assert commands[-1] == ["sudo", "systemctl", "enable", "print-bot"]


def test_install_service_stops_at_first_failure(tmp_path):
    failure = subprocess.CalledProcessError(1, ["sudo"])
    with patch("deploy.sys.platform", "linux"), patch(
        "deploy.subprocess.run", side_effect=failure
    ) as run:
        with pytest.raises(SystemExit):
            deploy.install_service(tmp_path / "print-bot.service")
    assert run.call_count == 1
