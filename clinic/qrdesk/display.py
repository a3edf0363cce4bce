"""Terminal staff display: opens a registration session and shows its live QR."""
from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from pathlib import Path
from typing import Optional

from .client.errors import ClinicApiError
from .client.http_client import ClinicHttpClient
from .client.room_channel import RoomChannel
from .config import get_settings
from .context import HandoffCache, RegistrationContext
from .logging_config import configure_logging
from .qr_render import render_png, render_text
from .session_binder import SessionBinder, open_registration_session
from .state import BinderPhase, Severity

log = logging.getLogger("qrdesk.display")


def parse(argv: Optional[list[str]] = None) -> argparse.Namespace:
    ap = argparse.ArgumentParser(description="Clinic registration QR display")
    ap.add_argument("--device", required=True, help="Device id to bind")
    ap.add_argument("--doctor", required=True, help="Doctor id to bind")
    ap.add_argument("--device-name", default="")
    ap.add_argument("--doctor-name", default="")
    ap.add_argument("--username", default="reception")
    ap.add_argument("--password", default="reception")
    ap.add_argument("--notes", default=None, help="Notes stored on the mapping")
    ap.add_argument("--png", type=Path, default=None, help="Also write the current QR to this PNG file")
    ap.add_argument("--log", default=None, choices=["debug", "info", "warning", "error"])
    return ap.parse_args(argv)


async def run_display(args: argparse.Namespace) -> int:
    settings = get_settings()
    http = ClinicHttpClient(settings)
    channel = RoomChannel(settings)
    context = RegistrationContext()
    handoff = HandoffCache(settings.handoff_cache_dir)
    binder: Optional[SessionBinder] = None

    try:
        try:
            user = await http.login(args.username, args.password)
        except ClinicApiError as exc:
            print(f"Login failed: {exc.user_message}", file=sys.stderr)
            return 1
        log.info("Logged in as %s", user.get("user", {}).get("username"))

        notice = await open_registration_session(
            http,
            context,
            handoff,
            device_id=args.device,
            doctor_id=args.doctor,
            device_name=args.device_name,
            doctor_name=args.doctor_name,
            notes=args.notes,
        )
        print(notice.message)
        if notice.severity == Severity.ERROR:
            return 1

        binder = SessionBinder(channel, http, context, settings=settings, handoff=handoff)
        events = binder.register_display()
        if not await binder.start():
            return 1

        while True:
            event = await events.get()
            if event.type == "notification":
                print(f"[{event.data.get('severity')}] {event.data.get('message')}")
            elif event.type == "devices":
                log.info("Busy devices: %s", ", ".join(event.data.get("busy", [])) or "none")
            elif event.phase == BinderPhase.READY:
                url = event.data["url"]
                print(render_text(url))
                print(url)
                if args.png:
                    args.png.write_bytes(render_png(url))
            elif event.phase == BinderPhase.STALLED:
                print(f"QR setup stalled ({event.error}); retrying missing steps: {event.data.get('missing')}")
                await binder.retry()
            elif event.phase == BinderPhase.LOADING:
                print("Waiting for QR code...")
    finally:
        if binder is not None:
            await binder.leave()
        await channel.disconnect()
        await http.aclose()


def main(argv: Optional[list[str]] = None) -> int:
    args = parse(argv)
    settings = get_settings()
    configure_logging(
        (args.log or settings.log_level).upper(),
        settings.log_directory,
        settings.log_retention_days,
        filename="qrdesk-display.log",
    )
    try:
        return asyncio.run(run_display(args))
    except KeyboardInterrupt:
        log.info("Display stopped")
        return 0


if __name__ == "__main__":
    sys.exit(main())
