"""Command-line front end for building and managing panels."""
from __future__ import annotations

import argparse
import asyncio
import contextlib
import json
import os
import sys
from dataclasses import asdict
from typing import Any, Awaitable, Optional, Sequence

from panelforge.config import BuildSettings
from panelforge.errors import PanelForgeError
from panelforge.logs import configure_logging
from panelforge.service import PanelService
from panelforge.session import ChannelSink, Outcome


async def _print_events(sink: ChannelSink) -> Optional[Outcome]:
    outcome: Optional[Outcome] = None
    async for event in sink:
        if event.kind == "data":
            sys.stdout.write(event.payload)
            sys.stdout.flush()
        elif event.kind == "artifact":
            print(f"\n[artifact] {event.payload}", file=sys.stderr)
        elif event.kind == "end":
            outcome = event.payload
    return outcome


async def _stream(work: Awaitable[Any], sink: ChannelSink) -> tuple[Any, Optional[Outcome]]:
    """Run ``work`` while echoing the session events it produces."""
    printer = asyncio.create_task(_print_events(sink))
    try:
        result = await work
    finally:
        if sink.ended:
            outcome = await printer
            sys.stdout.write("\n")
        else:
            # no session was started, so no end event will ever arrive
            printer.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await printer
            outcome = None
    return result, outcome


async def _add(service: PanelService, args: argparse.Namespace) -> int:
    sink = ChannelSink()
    metadata, outcome = await _stream(service.add_panel(args.request, sink), sink)
    print(json.dumps({"panel": metadata.id, "type": metadata.type.value, "title": metadata.display_title}))
    if outcome is not None and not outcome.success:
        print(f"Build failed: {outcome.reason}", file=sys.stderr)
        return 1
    return 0


async def _enhance(service: PanelService, args: argparse.Namespace) -> int:
    sink = ChannelSink()
    result, _outcome = await _stream(service.enhance_panel(args.panel_id, args.instruction, sink), sink)
    print(json.dumps(result))
    return 0 if result.get("success") else 1


async def _list(service: PanelService, args: argparse.Namespace) -> int:  # noqa: ARG001
    for applet in service.list_applets():
        print(json.dumps(applet.to_mapping()))
    return 0


async def _open(service: PanelService, args: argparse.Namespace) -> int:
    view = service.reopen_applet(args.applet_id)
    print(json.dumps(asdict(view)))
    return 0


async def _delete(service: PanelService, args: argparse.Namespace) -> int:
    result = service.delete_applet(args.applet_id)
    print(json.dumps(result))
    return 0 if result.get("success") else 1


async def _available(service: PanelService, args: argparse.Namespace) -> int:  # noqa: ARG001
    for entry in service.available_panels():
        print(json.dumps(entry))
    return 0


async def _import(service: PanelService, args: argparse.Namespace) -> int:
    result = service.import_panel(args.panel_id)
    print(json.dumps(result))
    return 0 if result.get("success") else 1


async def _run(args: argparse.Namespace, settings: BuildSettings) -> int:
    service = PanelService.from_settings(settings)
    service.load()
    try:
        return await args.func(service, args)
    finally:
        await service.close()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Generate and manage interactive panels.")
    parser.add_argument("--config", help="Path to the panelforge YAML configuration file")
    parser.add_argument("--log-level", default=None, help="Override the configured log level")
    sub = parser.add_subparsers(dest="command", required=True)

    add_cmd = sub.add_parser("add", help="Create a panel from a natural language request")
    add_cmd.add_argument("request", help="What the panel should do")
    add_cmd.set_defaults(func=_add)

    enhance_cmd = sub.add_parser("enhance", help="Refine an existing build panel")
    enhance_cmd.add_argument("panel_id", help="Panel identifier")
    enhance_cmd.add_argument("instruction", help="Change to apply")
    enhance_cmd.set_defaults(func=_enhance)

    list_cmd = sub.add_parser("list", help="List saved applets")
    list_cmd.set_defaults(func=_list)

    open_cmd = sub.add_parser("open", help="Show what an applet would load")
    open_cmd.add_argument("applet_id", help="Applet identifier")
    open_cmd.set_defaults(func=_open)

    delete_cmd = sub.add_parser("delete", help="Delete an applet and its panels")
    delete_cmd.add_argument("applet_id", help="Applet identifier")
    delete_cmd.set_defaults(func=_delete)

    available_cmd = sub.add_parser("available", help="List stored panels that no applet shows")
    available_cmd.set_defaults(func=_available)

    import_cmd = sub.add_parser("import", help="Wrap a stored panel in a new applet")
    import_cmd.add_argument("panel_id", help="Panel identifier")
    import_cmd.set_defaults(func=_import)

    return parser


def main(argv: Sequence[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if args.config:
        os.environ["PANELFORGE_CONFIG"] = args.config

    try:
        settings = BuildSettings.from_config()
    except ValueError as exc:
        raise SystemExit(f"Invalid configuration: {exc}") from exc
    configure_logging(args.log_level or settings.log_level, settings.log_file)

    try:
        return asyncio.run(_run(args, settings))
    except PanelForgeError as exc:
        raise SystemExit(f"panelforge: {exc}") from exc


if __name__ == "__main__":
    sys.exit(main())
