#!/usr/bin/env python
"""
Run one EEG archive through the SEA pipeline from the command line.

Logs in, selects the file, uploads it, polls for the SEA Index and, when a
FHIR identity is configured (FHIR_SERVER_URL / FHIR_ACCESS_TOKEN /
FHIR_PATIENT_ID), writes the Observation. The built Observation is exported
to JSON either way.
"""
import argparse
import asyncio
import getpass
import json
import os
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))


async def main(args: argparse.Namespace) -> int:
    from sea_bridge.analysis_client import AnalysisClient
    from sea_bridge.errors import SeaBridgeError
    from sea_bridge.identity import StaticIdentity
    from sea_bridge.pipeline import Phase, SessionController
    from sea_bridge.records import RecordWriter

    path = Path(args.file)
    if not path.exists():
        print(f"ERROR: {path} not found")
        return 1

    async def on_event(payload):
        session = payload.get("session") or {}
        print(f"[{session.get('progress', 0):3d}%] {session.get('phase')}: {session.get('status_text')}")

    controller = SessionController(
        analysis=AnalysisClient(),
        records=RecordWriter(StaticIdentity.from_env()),
        on_event=on_event,
    )
    try:
        password = args.password or os.getenv("SEA_PASSWORD") or getpass.getpass("SEA password: ")
        try:
            await controller.login(args.username, password)
        except SeaBridgeError as e:
            print(f"ERROR: {e.user_message}")
            return 1

        snap = await controller.select_file(path.name, path.read_bytes())
        print(f"\nMetadata: {json.dumps(snap['metadata'], ensure_ascii=False)}")
        print(f"Signal quality: {snap['signal_quality_display']}")
        if snap["phase"] == Phase.REJECTED.value:
            print(f"ERROR: {snap['validation_error']['user_message']}")
            return 1

        try:
            snap = await controller.start()
        except SeaBridgeError as e:
            print(f"ERROR: {e.user_message}")
            return 1

        print(f"\n{'='*60}")
        print(f"Phase: {snap['phase']}")
        print(f"SEA Index: {snap['score']}")
        if snap["error"]:
            print(f"Error: {snap['error']['user_message']}")
        if snap["write_outcome"]:
            outcome = snap["write_outcome"]
            print(f"FHIR write: {outcome['status']} {outcome['status_code'] or ''} {outcome['reason']}")
        records = controller.records
        if records is not None and records.last_record is not None:
            out = records.export(Path(args.export) if args.export else None)
            print(f"Observation exported to {out}")
        print(f"{'='*60}\n")
        return 0 if snap["phase"] == Phase.SUCCEEDED.value else 2
    finally:
        await controller.aclose()


if __name__ == "__main__":
    ap = argparse.ArgumentParser(description="Upload a .gz EEG recording for SEA Index analysis")
    ap.add_argument("file", help="Path to the .gz EEG recording")
    ap.add_argument("--username", required=True, help="SEA service username")
    ap.add_argument("--password", help="SEA service password (default: $SEA_PASSWORD or prompt)")
    ap.add_argument("--export", help="Where to write the Observation JSON")
    sys.exit(asyncio.run(main(ap.parse_args())))
