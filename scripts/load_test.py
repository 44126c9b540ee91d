"""
Load test for the NoteForge ask API.
Fires concurrent questions at one book or series and reports latency, the
share of low-confidence answers and the error codes returned.

Usage:  python load_test.py OWNER_ID (book|series) TARGET_ID [num_requests] [concurrency]
"""
import json
import sys
import time
import urllib.error
import urllib.request
from collections import Counter
from concurrent.futures import ThreadPoolExecutor, as_completed

BASE_URL = "http://127.0.0.1:8000"
API_URL = f"{BASE_URL}/api/v1/ai/query"

QUESTIONS = [
    "What happened in chapter 2?",
    "Who is the main character?",
    "Where did Tobin go?",
    "What does Oren owe the family?",
    "Summarize the first chapter.",
    "Which places appear in my notes?",
]


def send_question(owner_id: str, scope: dict, question: str) -> dict:
    payload = json.dumps({"query_text": question, "scope": scope}).encode()
    req = urllib.request.Request(
        API_URL,
        data=payload,
        headers={"Content-Type": "application/json", "X-Owner-Id": owner_id},
        method="POST",
    )
    start = time.perf_counter()
    try:
        with urllib.request.urlopen(req, timeout=60) as resp:
            data = json.loads(resp.read())
        latency = (time.perf_counter() - start) * 1000
        return {"success": True, "latency_ms": latency, "low_confidence": data["answer"]["low_confidence"]}
    except urllib.error.HTTPError as e:
        latency = (time.perf_counter() - start) * 1000
        try:
            code = json.loads(e.read())["error"]["code"]
        except (ValueError, KeyError, TypeError):
            code = f"HTTP_{e.code}"
        return {"success": False, "latency_ms": latency, "error": code}
    except (urllib.error.URLError, TimeoutError) as e:
        latency = (time.perf_counter() - start) * 1000
        return {"success": False, "latency_ms": latency, "error": type(e).__name__}


def main():
    if len(sys.argv) < 4 or sys.argv[2] not in ("book", "series"):
        print(__doc__)
        sys.exit(2)
    owner_id, kind, target_id = sys.argv[1:4]
    num_requests = int(sys.argv[4]) if len(sys.argv) > 4 else 10
    concurrency = int(sys.argv[5]) if len(sys.argv) > 5 else 4
    scope = {f"{kind}_id": target_id}

    print(f"\n{'='*60}")
    print("  NoteForge Ask Load Test")
    print(f"  Scope: {kind} {target_id}")
    print(f"  Requests: {num_requests}  |  Concurrency: {concurrency}")
    print(f"{'='*60}\n")

    results = []
    wall_start = time.perf_counter()
    with ThreadPoolExecutor(max_workers=concurrency) as pool:
        futures = [
            pool.submit(send_question, owner_id, scope, QUESTIONS[i % len(QUESTIONS)])
            for i in range(num_requests)
        ]
        for f in as_completed(futures):
            r = f.result()
            status = "OK" if r["success"] else r["error"]
            print(f"  [{status}] {r['latency_ms']:>8.1f} ms")
            results.append(r)
    wall_elapsed = time.perf_counter() - wall_start

    successes = [r for r in results if r["success"]]
    failures = Counter(r["error"] for r in results if not r["success"])
    latencies = sorted(r["latency_ms"] for r in successes)

    print(f"\n{'='*60}")
    print("  RESULTS")
    print(f"{'='*60}")
    print(f"  Successful:        {len(successes)} / {num_requests}")
    print(f"  Low confidence:    {sum(1 for r in successes if r['low_confidence'])}")
    print(f"  Throughput:        {num_requests / wall_elapsed:.2f} req/s")
    if latencies:
        print(f"  Avg latency:       {sum(latencies)/len(latencies):.0f} ms")
        print(f"  P50 latency:       {latencies[len(latencies)//2]:.0f} ms")
        print(f"  P95 latency:       {latencies[min(len(latencies) - 1, int(len(latencies)*0.95))]:.0f} ms")
    for code, count in failures.most_common():
        print(f"  {code:<19}{count}")
    print(f"{'='*60}\n")

    try:
        with urllib.request.urlopen(f"{BASE_URL}/metrics", timeout=10) as resp:
            print("  Server /metrics snapshot:")
            print(json.dumps(json.loads(resp.read()), indent=4))
    except (urllib.error.URLError, TimeoutError) as e:
        print(f"  Could not fetch /metrics: {e}")


if __name__ == "__main__":
    main()
