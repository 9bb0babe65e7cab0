"""Stand-in language test runner used by the test suite.

Usage: fake_suite.py TEST_NAME

Passes when the bundle named by BINDERY_BUNDLE has a manifest. Tests whose
name mentions ``network`` fail (no network in the sandbox), as do tests
whose name mentions ``fail``.

FAKE_SUITE_SLEEP delays each test by that many seconds. FAKE_SUITE_TRACE
names a file that receives one ``start``/``end`` line per test with the
bundle directory and a wall-clock timestamp.
"""

from __future__ import annotations

import os
import sys
import time
from pathlib import Path


def _trace(event: str, bundle: Path) -> None:
    trace = os.environ.get("FAKE_SUITE_TRACE")
    if trace:
        with open(trace, "a", encoding="utf-8") as f:
            f.write(f"{event} {bundle.name} {time.time():.6f}\n")


def main() -> int:
    test = sys.argv[1]
    bundle = Path(os.environ["BINDERY_BUNDLE"])
    if not (bundle / "manifest.json").is_file():
        print(f"{test}: bundle manifest missing", file=sys.stderr)
        return 2
    _trace("start", bundle)
    time.sleep(float(os.environ.get("FAKE_SUITE_SLEEP", "0")))
    _trace("end", bundle)
    if "network" in test:
        print(f"{test}: network unreachable", file=sys.stderr)
        return 1
    if "fail" in test:
        print(f"{test}: assertion failed", file=sys.stderr)
        return 1
    print(f"{test}: ok")
    return 0


if __name__ == "__main__":
    sys.exit(main())
