"""Daemon entrypoint: serve the local command app, or run a single command from the terminal."""

from __future__ import annotations

import argparse
import asyncio
import json
import sys
from typing import Any

from src.jobtrack.runtime.service import RuntimeService, get_runtime_service, reset_runtime_service


async def console_consent(auth_url: str) -> str:
    """Ask the user to complete consent in a browser and paste back the redirect URL."""
    print("Open this URL in a browser and approve access:", file=sys.stderr)
    print(auth_url, file=sys.stderr)
    return (await asyncio.to_thread(input, "Paste the full redirect URL: ")).strip()


def run_daemon(*, host: str = "127.0.0.1", port: int = 8000) -> int:
    runtime = get_runtime_service()
    runtime.start(source="daemon")
    try:
        import uvicorn
    except Exception as exc:  # pragma: no cover - dependency error guard
        raise RuntimeError("uvicorn is required for daemon app mode") from exc

    uvicorn.run("app.main:app", host=host, port=port, reload=False)
    return 0


async def _run_command(runtime: RuntimeService, command: str, payload: dict[str, Any]) -> dict[str, Any]:
    runtime.start(source="cli")
    try:
        return await runtime.handle_command(command, payload)
    finally:
        await runtime.stop(source="cli")


def run_command(command: str, payload: dict[str, Any], *, interactive: bool = False) -> int:
    runtime = RuntimeService(consent_handler=console_consent if interactive else None)
    reset_runtime_service(runtime)
    out = asyncio.run(_run_command(runtime, command, payload))
    print(json.dumps(out, indent=2))
    return 0 if out.get("ok") else 1


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Run the JobTrack capture sync daemon.")
    parser.add_argument("--host", default="127.0.0.1", help="Local bind host for app mode.")
    parser.add_argument("--port", type=int, default=8000, help="Local bind port for app mode.")
    parser.add_argument("--command", help="Run one command (e.g. test-connection, create-sheet) and exit.")
    parser.add_argument("--payload", default="{}", help="JSON payload for --command.")
    parser.add_argument(
        "--interactive",
        action="store_true",
        help="Allow console OAuth consent when no refresh token is configured.",
    )
    args = parser.parse_args(argv)

    if args.command:
        try:
            payload = json.loads(args.payload)
        except json.JSONDecodeError:
            parser.error("--payload must be valid JSON")
        if not isinstance(payload, dict):
            parser.error("--payload must be a JSON object")
        return run_command(args.command, payload, interactive=args.interactive)
    return run_daemon(host=args.host, port=args.port)


if __name__ == "__main__":
    raise SystemExit(main())
