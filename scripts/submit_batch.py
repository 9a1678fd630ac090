#!/usr/bin/env python3
"""
Post a batch file to a running action engine API.

The file holds {"batch_config": {...}, "requests": [...]}; the user id comes
from the command line.
"""

import argparse
import json
import sys

import requests


def format_batch(batch):
    lines = [
        f"Batch {batch['id']} ({batch['batch_name']}): {batch['status']}",
        f"  completed={batch['completed']} failed={batch['failed']} "
        f"pending={batch['pending']} skipped={batch['skipped']} of {batch['total_actions']}",
    ]
    if batch.get("success_rate") is not None:
        lines.append(f"  success rate: {batch['success_rate']:.0%}")
    if batch.get("total_actual_impact") is not None:
        lines.append(f"  actual impact: {batch['total_actual_impact']:.2f}")
    return "\n".join(lines)


def main():
    parser = argparse.ArgumentParser(description="Submit a batch of actions")
    parser.add_argument("batch_file", help="JSON file with batch_config and requests")
    parser.add_argument("--user", required=True, help="Owning user id")
    parser.add_argument("--api", default="http://127.0.0.1:8000", help="API base URL")
    parser.add_argument("--timeout", type=float, default=300, help="Request timeout in seconds")
    args = parser.parse_args()

    with open(args.batch_file, "r", encoding="utf-8") as handle:
        body = json.load(handle)
    body["userId"] = args.user

    try:
        response = requests.post(f"{args.api}/actions/batch", json=body, timeout=args.timeout)
    except requests.RequestException as e:
        print(f"Request failed: {e}")
        sys.exit(2)

    if response.status_code != 200:
        print(f"Batch rejected ({response.status_code}): {response.text}")
        sys.exit(1)

    print(format_batch(response.json()))


if __name__ == "__main__":
    main()
