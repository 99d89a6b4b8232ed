#!/usr/bin/env python3
"""Run the simulated edge device agent against an MQTT broker.

Reads ``EDGETWIN_*`` settings from the environment (see
:class:`edgetwin.AgentConfig`), connects, publishes the initial reported
state and then serves direct methods, cloud-to-device messages and
desired-state updates until interrupted.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import signal
import sys
from pathlib import Path

# Allow running from repo root without installing the package.
_repo = Path(__file__).resolve().parent.parent
_src = _repo / "src"
if _src.is_dir():
    sys.path.insert(0, str(_src))

from edgetwin import AgentConfig, ConfigError, MqttTransport, SyncEngine, TransportError  # noqa: E402
from edgetwin.models import UpdatePolicy  # noqa: E402

_LOG = logging.getLogger("run_agent")


def _parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Simulated IoT edge device with twin sync and firmware updates.",
    )
    parser.add_argument(
        "--stage-delay",
        type=float,
        default=None,
        help="Seconds each firmware update stage takes (default from env or 5).",
    )
    parser.add_argument(
        "--update-policy",
        choices=[p.value for p in UpdatePolicy],
        default=None,
        help="Handling of firmware updates requested during another update.",
    )
    parser.add_argument(
        "--insecure",
        action="store_true",
        help="Connect without TLS (local test brokers).",
    )
    parser.add_argument(
        "--verbose",
        action="store_true",
        help="Enable debug logging.",
    )
    return parser.parse_args()


async def _run(config: AgentConfig) -> None:
    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for signum in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(signum, stop.set)

    async with SyncEngine(config, MqttTransport(config)):
        _LOG.info("Agent running, press Ctrl+C to stop")
        await stop.wait()
    _LOG.info("Agent stopped")


def _main() -> int:
    args = _parse_args()
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    overrides: dict[str, object] = {}
    if args.stage_delay is not None:
        overrides["stage_delay"] = args.stage_delay
    if args.update_policy is not None:
        overrides["update_policy"] = UpdatePolicy(args.update_policy)
    if args.insecure:
        overrides["use_tls"] = False

    try:
        config = AgentConfig.from_env(**overrides)
    except ConfigError as exc:
        print(f"[agent] Configuration error: {exc}", file=sys.stderr)
        return 2

    try:
        asyncio.run(_run(config))
    except TransportError as exc:
        print(f"[agent] Transport failure: {exc}", file=sys.stderr)
        return 1
    return 0


if __name__ == "__main__":
    raise SystemExit(_main())
