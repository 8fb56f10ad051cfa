#!/usr/bin/env python3
"""Print an installation's Incentivly registration state and purchase ledger.

Reads a JsonFileStore directory (read-only) and prints JSON:

  - registration: identifier, registered flag, whether a dev key is stored
  - ledger: every known token with its state and failed-attempt count

Usage:
  python scripts/inspect_ledger.py /path/to/store-dir [--namespace incentivly_prefs]
"""

from __future__ import annotations

import argparse
import asyncio
import json

from incentivly.constants import DEFAULT_NAMESPACE, MAX_REPORT_ATTEMPTS
from incentivly.ledger_store import LedgerStore
from incentivly.registration import load_registration
from incentivly.stores import JsonFileStore


async def _inspect(directory: str, namespace: str, max_attempts: int) -> dict:
    store = JsonFileStore(directory, namespace=namespace)
    context = await load_registration(store)
    ledger = await LedgerStore(store, max_attempts=max_attempts).get()

    tokens = sorted(ledger.reported | set(ledger.attempts))
    entries = []
    for token in tokens:
        entry = ledger.entry(token)
        entries.append({
            "token": token,
            "state": entry.state.value,
            "attempt_count": entry.attempt_count,
            "should_process": ledger.should_process(token),
        })

    return {
        "store_file": str(store.path),
        "registration": {
            "user_identifier": context.user_identifier,
            "is_registered": context.is_registered,
            "dev_key_status": "present" if context.dev_key else "missing",
        },
        "ledger": entries,
    }


def main() -> None:
    parser = argparse.ArgumentParser(description=__doc__.splitlines()[0])
    parser.add_argument("directory", help="JsonFileStore directory")
    parser.add_argument("--namespace", default=DEFAULT_NAMESPACE)
    parser.add_argument("--max-attempts", type=int, default=MAX_REPORT_ATTEMPTS)
    args = parser.parse_args()

    report = asyncio.run(_inspect(args.directory, args.namespace, args.max_attempts))
    print(json.dumps(report, indent=2))


if __name__ == "__main__":
    main()
