from __future__ import annotations

import argparse
import json
import sys
import urllib.error
import urllib.request
from datetime import datetime, timezone


def post_json(url: str, body: bytes, headers: dict[str, str]) -> tuple[int, str]:
    request = urllib.request.Request(url, data=body, method="POST")
    request.add_header("Content-Type", "application/json")
    for key, value in headers.items():
        request.add_header(key, value)
    try:
        with urllib.request.urlopen(request, timeout=15) as response:
            return response.status, response.read().decode("utf-8")
    except urllib.error.HTTPError as exc:
        return exc.code, exc.read().decode("utf-8")


def call_event(phone: str, index: int, *, status: str, direction: str) -> dict:
    return {
        "uuid": f"mock-{index}",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "body": {
            "telephonySessionId": f"s-mock-{index}",
            "party": {
                "id": f"p-mock-{index}",
                "direction": direction,
                "status": {"code": status},
                "to": {"phoneNumber": phone},
            },
        },
    }


def main() -> int:
    parser = argparse.ArgumentParser(description="Send mock call-ended events to Lead Lock.")
    parser.add_argument("--base-url", default="http://127.0.0.1:3000")
    parser.add_argument("--phone", required=True, help="Lead phone, e.g. 4155551212.")
    parser.add_argument("--count", type=int, default=2)
    parser.add_argument("--status", default="Disconnected")
    parser.add_argument("--direction", default="Outbound")
    parser.add_argument("--secret", default="", help="Value of WEBHOOK_SHARED_SECRET.")
    args = parser.parse_args()

    endpoint = f"{args.base_url.rstrip('/')}/webhook"
    headers = {"x-webhook-secret": args.secret} if args.secret else {}
    for index in range(1, args.count + 1):
        payload = call_event(args.phone, index, status=args.status, direction=args.direction)
        body = json.dumps(payload, separators=(",", ":")).encode("utf-8")
        status_code, response = post_json(endpoint, body, headers)
        print(f"{status_code} {payload['uuid']} {response}")

    return 0


if __name__ == "__main__":
    sys.exit(main())
