import argparse
import os
import time

import requests

# ---------------------------------------------------------------------
# Environment
# ---------------------------------------------------------------------
EDGE = os.environ.get("BLUEGREEN_EDGE_URL", "http://localhost:8080")
INTERVAL = float(os.environ.get("PROBE_INTERVAL", "0.5"))
TIMEOUT = float(os.environ.get("PROBE_TIMEOUT", "5"))
REVISION_HEADER = "X-Bluegreen-Revision"


# ---------------------------------------------------------------------
# Core probe logic
# ---------------------------------------------------------------------
def run_probe_once(url: str = None):
    """Hit the edge once and return a record of what came back."""
    url = url or EDGE
    start = time.time()
    try:
        r = requests.get(url, timeout=TIMEOUT)
        data = {
            "ts": int(start * 1000),
            "status": r.status_code,
            "latency_ms": int((time.time() - start) * 1000),
            "revision": r.headers.get(REVISION_HEADER),
            "ok": r.status_code < 500,
        }
    except requests.RequestException as e:
        data = {
            "ts": int(start * 1000),
            "status": 0,
            "latency_ms": int((time.time() - start) * 1000),
            "revision": None,
            "ok": False,
            "error": str(e),
        }
    return data


def summarize(records):
    total = len(records)
    failed = [r for r in records if not r["ok"]]
    revisions = sorted({r["revision"] for r in records if r["revision"] is not None})
    availability = 100.0 * (total - len(failed)) / total if total else 100.0
    return {
        "total": total,
        "failed": len(failed),
        "availability": round(availability, 3),
        "revisions_seen": revisions,
        "zero_downtime": total > 0 and not failed,
    }


# ---------------------------------------------------------------------
# CLI Entrypoints
# ---------------------------------------------------------------------
def main(duration: float = 60.0, url: str = None, interval: float = None):
    """Probe for ``duration`` seconds and print a downtime report."""
    interval = INTERVAL if interval is None else interval
    deadline = time.time() + duration
    records = []
    while time.time() < deadline:
        data = run_probe_once(url)
        records.append(data)
        if not data["ok"]:
            print("request failed", data)
        time.sleep(interval)

    report = summarize(records)
    print(
        f"requests={report['total']} failed={report['failed']} "
        f"availability={report['availability']}% revisions={report['revisions_seen']}"
    )
    print("zero downtime: PASS" if report["zero_downtime"] else "zero downtime: FAIL")
    return report


def main_once(url: str = None):
    """Run exactly one iteration (for tests)."""
    data = run_probe_once(url)
    print("probe ok" if data["ok"] else "probe failed", data)
    return data


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Zero-downtime probe: hit the edge during a migration")
    parser.add_argument("--url", default=EDGE, help="edge URL to probe")
    parser.add_argument("--duration", type=float, default=60.0, help="seconds to probe for")
    parser.add_argument("--interval", type=float, default=INTERVAL, help="seconds between requests")
    args = parser.parse_args()
    report = main(duration=args.duration, url=args.url, interval=args.interval)
    exit(0 if report["zero_downtime"] else 1)
