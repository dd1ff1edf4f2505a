#!/usr/bin/env python3
"""Prepare a checkout for running the print bot under systemd.

Creates the log and download folders, writes a ``.env`` listing every
setting with its default, and renders ``print-bot.service``.
"""

import argparse
import dataclasses
import os
import subprocess
import sys
from pathlib import Path

from config import Settings

SERVICE_NAME = "print-bot"

# Required settings without a usable default
PLACEHOLDERS = {
    "bot_token": "YOUR_BOT_TOKEN_FROM_BOTFATHER",
    "admin_id": "YOUR_TELEGRAM_USER_ID",
    "whitelist": "YOUR_TELEGRAM_USER_ID",
}

UNIT_TEMPLATE = """\
[Unit]
Description=Telegram serial print bot
After=network.target
Wants=dev-{device}.device

[Service]
Type=simple
User={user}
SupplementaryGroups=dialout
WorkingDirectory={base}
ExecStart={base}/venv/bin/python bot.py
Restart=on-failure
RestartSec=10

[Install]
WantedBy=multi-user.target
"""


def _env_value(value: object) -> str:
    if isinstance(value, bool):
        return str(value).lower()
    return str(value)


def render_env() -> str:
    """One KEY=default line per Settings field; unset optionals are commented out."""
    lines = ["# Serial print bot settings, edit the placeholders before starting"]
    for f in dataclasses.fields(Settings):
        key = f.name.upper()
        if f.name in PLACEHOLDERS:
            lines.append(f"{key}={PLACEHOLDERS[f.name]}")
        elif f.default is None:
            lines.append(f"# {key}=")
        else:
            lines.append(f"{key}={_env_value(f.default)}")
    return "\n".join(lines) + "\n"


def render_unit(base: Path, user: str, serial_port: str = Settings.serial_port) -> str:
    device = Path(serial_port).name
    return UNIT_TEMPLATE.format(base=base, user=user, device=device)


def prepare(base: Path, user: str) -> Path:
    """Create runtime folders, a missing .env and the unit file; return the unit path."""
    for folder in (Settings.tmp_dir, Settings.log_file.parent):
        (base / folder).mkdir(parents=True, exist_ok=True)

    env_path = base / ".env"
    if not env_path.exists():
        env_path.write_text(render_env(), encoding="utf-8")
        print(f"Wrote {env_path}; set BOT_TOKEN, ADMIN_ID and WHITELIST")

    unit_path = base / f"{SERVICE_NAME}.service"
    unit_path.write_text(render_unit(base, user), encoding="utf-8")
    print(f"Wrote {unit_path}")
    return unit_path


def install_service(unit_path: Path) -> None:
    if sys.platform != "linux":
        print("systemd units can only be installed on Linux", file=sys.stderr)
        return
    commands = [
        ["sudo", "install", "-m", "644", str(unit_path), "/etc/systemd/system/"],
        ["sudo", "systemctl", "daemon-reload"],
        ["sudo", "systemctl", "enable", SERVICE_NAME],
    ]
    for command in commands:
        try:
            subprocess.run(command, check=True)
        except subprocess.CalledProcessError as e:
            sys.exit(f"{' '.join(command)} failed with exit code {e.returncode}")
    print(f"Enabled {SERVICE_NAME}; start it with: sudo systemctl start {SERVICE_NAME}")


def main() -> None:
    parser = argparse.ArgumentParser(description=__doc__.splitlines()[0])
    parser.add_argument("--install-service", action="store_true", help="copy and enable the unit (sudo)")
    parser.add_argument(
        "--user",
        default=os.environ.get("SUDO_USER") or os.environ.get("USER", "pi"),
        help="account the service runs as",
    )
    args = parser.parse_args()

    unit_path = prepare(Path(__file__).resolve().parent, args.user)
    if args.install_service:
        install_service(unit_path)


if __name__ == "__main__":
    main()
