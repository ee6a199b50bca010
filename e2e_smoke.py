#!/usr/bin/env python3
"""
End-to-end smoke script for the Remote Shell Runner.
Checks: health, run, peek, audits, reset.
Requires: backend running on http://localhost:8080 with a reachable shell.
"""
import sys
import time
import requests

BASE_URL = "http://localhost:8080"
TIMEOUT = 120  # seconds to wait for a queued job to land in the audit trail


def smoke():
    print("[1] Health...")
    resp = requests.get(f"{BASE_URL}/health")
    if resp.status_code != 200:
        print(f"ERROR: Health failed with {resp.status_code}: {resp.text}")
        return False
    health = resp.json()
    print(f"✓ mode={health['mode']} queue_available={health['queue_available']} session={health['session_state']}")

    print("[2] Running Invoke-Script...")
    resp = requests.post(f"{BASE_URL}/jobs/run", json={
        "action": "Invoke-Script",
        "params": {"command": "Get-Date"},
    }, timeout=TIMEOUT)
    if resp.status_code != 200:
        print(f"ERROR: Run failed with {resp.status_code}: {resp.text}")
        return False
    data = resp.json()
    job_id = data["job_id"]
    print(f"✓ Job accepted. job_id: {job_id} mode: {data['mode']}")
    if data["mode"] == "inline":
        print("---")
        print(data["result"]["output"][:500])
        print("---")

    print("[3] Waiting for terminal audit...")
    start = time.time()
    statuses = []
    while time.time() - start < TIMEOUT:
        resp = requests.get(f"{BASE_URL}/audits/{job_id}")
        statuses = [a["status"] for a in resp.json()["audits"]]
        print(f"  Audits: {statuses}")
        if "completed" in statuses or "failed" in statuses:
            break
        time.sleep(1)
    if statuses[-1:] != ["completed"]:
        print(f"ERROR: Job ended with audits {statuses}")
        return False
    print("✓ Job completed")

    print("[4] Peek...")
    snap = requests.get(f"{BASE_URL}/jobs/peek").json()
    print(f"✓ status={snap['status']} command={snap['command']!r} ({len(snap['output'])} chars)")

    print("[5] Recent audits...")
    rows = requests.get(f"{BASE_URL}/audits", params={"limit": 5}).json()["audits"]
    for r in rows:
        print(f"  - {r['timestamp']} {r['job_id']} {r['action']} {r['status']}")

    print("[6] Reset...")
    resp = requests.post(f"{BASE_URL}/jobs/reset")
    if resp.status_code != 200 or not resp.json().get("success"):
        print(f"ERROR: Reset failed: {resp.text}")
        return False
    print("✓ Session reset")

    print("\n✓✓✓ Smoke test PASSED ✓✓✓")
    return True


if __name__ == "__main__":
    try:
        success = smoke()
        sys.exit(0 if success else 1)
    except Exception as e:
        print(f"FATAL: {e}")
        import traceback
        traceback.print_exc()
        sys.exit(1)
