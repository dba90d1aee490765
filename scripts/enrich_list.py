# enrich_list.py

import argparse
import csv
import logging
import time
from pathlib import Path

import requests
from tqdm import tqdm

# Defaults (override with CLI flags as needed)
BASE_URL = "http://localhost:8000"
IMPORT_ENDPOINT = "/outreach-lists/import"
ENHANCE_ENDPOINT = "/outreach-lists/{list_id}/enhance"
GIVING_ENDPOINT = "/outreach-lists/{list_id}/enrich/giving"

TIMEOUT_SECS = 300
MAX_RETRIES = 3
RETRY_BACKOFF = 1.5  # seconds, multiplied by attempt number

logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(message)s")
log = logging.getLogger("enrich_list")

SESSION = requests.Session()
SESSION.headers.update({"Accept": "application/json"})


def read_account_numbers(path: Path) -> list[str]:
    """
    One account number per line, or the first column of a CSV.
    A header row is skipped when its first cell is not numeric.
    """
    values = []
    with path.open(newline="", encoding="utf-8-sig") as fh:
        for i, row in enumerate(csv.reader(fh)):
            if not row:
                continue
            cell = row[0].strip()
            if not cell:
                continue
            if i == 0 and not cell.isdigit():
                continue
            values.append(cell)
    # keep file order, drop repeats
    return list(dict.fromkeys(values))


def post_json(base_url: str, endpoint: str, payload: dict | None, timeout: int) -> dict:
    """
    POST with minimal retries; return JSON or error dict.
    Only 5xx and connection errors are retried.
    """
    url = f"{base_url}{endpoint}"
    last_err = None
    for attempt in range(1, MAX_RETRIES + 1):
        t0 = time.perf_counter()
        try:
            resp = SESSION.post(url, json=payload or {}, timeout=timeout)
            dur = time.perf_counter() - t0
            if resp.status_code == 200:
                data = resp.json()
                data["_elapsed_s"] = round(dur, 2)
                return data
            last_err = f"HTTP {resp.status_code}: {resp.text[:250]}"
            log.warning("POST %s attempt %s failed in %.2fs → %s", endpoint, attempt, dur, last_err)
            if resp.status_code < 500:
                break
        except requests.RequestException as e:
            dur = time.perf_counter() - t0
            last_err = f"Exception: {e}"
            log.warning("POST %s attempt %s raised in %.2fs → %s", endpoint, attempt, dur, e)

        if attempt < MAX_RETRIES:
            time.sleep(RETRY_BACKOFF * attempt)

    return {"ok": False, "error": last_err or "unknown error"}


def run_file(path: Path, args) -> bool:
    account_numbers = read_account_numbers(path)
    if not account_numbers:
        tqdm.write(f"⚠️  {path.name}: no account numbers, skipped")
        return False

    name = args.name or path.stem
    if args.dry_run:
        tqdm.write(f"[DRY RUN] Would import {len(account_numbers)} account numbers as '{name}'")
        return True

    created = post_json(args.base_url, IMPORT_ENDPOINT, {
        "name": name,
        "description": args.description,
        "account_numbers": account_numbers,
    }, args.timeout)
    if not created.get("ok"):
        tqdm.write(f"❌ {path.name}: import failed: {created.get('error')}")
        return False
    list_id = created["id"]
    tqdm.write(f"→ {path.name}: list {list_id} ({created.get('rows')} rows)")

    enhanced = post_json(
        args.base_url, ENHANCE_ENDPOINT.format(list_id=list_id), {"concurrency": args.concurrency}, args.timeout
    )
    if not enhanced.get("ok"):
        tqdm.write(f"❌ {path.name}: enhance failed: {enhanced.get('error')}")
        return False
    tqdm.write(
        f"✅ enhanced households={enhanced.get('enhancedHouseholds')} members={enhanced.get('enhancedMembers')} "
        f"not_found={len(enhanced.get('notFound') or [])} errors={len(enhanced.get('errors') or [])} "
        f"({enhanced.get('_elapsed_s')}s)"
    )
    for acct in (enhanced.get("notFound") or [])[:10]:
        tqdm.write(f"   not found: {acct}")

    if args.giving:
        giving = post_json(args.base_url, GIVING_ENDPOINT.format(list_id=list_id), None, args.timeout)
        if not giving.get("ok"):
            tqdm.write(f"❌ {path.name}: giving enrichment failed: {giving.get('error')}")
            return False
        tqdm.write(
            f"✅ giving households={giving.get('households')} with_stats={giving.get('withStats')} "
            f"failed={len(giving.get('failed') or [])}"
        )
    return True


def main():
    parser = argparse.ArgumentParser(description="Import account-number files as outreach lists and enrich them.")
    parser.add_argument("files", nargs="+", type=Path, help="CSV or text files of account numbers (one list each)")
    parser.add_argument("--base-url", default=BASE_URL, help="API base URL (default: %(default)s)")
    parser.add_argument("--name", default=None, help="List name (default: the file name)")
    parser.add_argument("--description", default=None, help="Optional list description")
    parser.add_argument("--concurrency", type=int, default=4, help="Search concurrency, 1..10 (default: 4)")
    parser.add_argument("--giving", action="store_true", help="Also compute giving snapshots after enhancing")
    parser.add_argument("--timeout", type=int, default=TIMEOUT_SECS, help="HTTP timeout seconds (default: %(default)s)")
    parser.add_argument("--dry-run", action="store_true", help="Only read the files; don’t call the API.")
    args = parser.parse_args()
    args.base_url = args.base_url.rstrip("/")

    log.info("🚀 Enriching %s file(s) via %s", len(args.files), args.base_url)
    ok = err = 0
    t_start = time.perf_counter()
    for path in tqdm(args.files, desc="Outreach lists", unit="list"):
        if run_file(path, args):
            ok += 1
        else:
            err += 1

    log.info("🎉 Done. Lists OK=%s, errors=%s, elapsed=%.1fs", ok, err, time.perf_counter() - t_start)


if __name__ == "__main__":
    main()
