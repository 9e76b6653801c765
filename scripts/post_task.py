#!/usr/bin/env python3
"""
Task Poster

Announces a task to a running Plaza over a raw WebSocket connection,
the way a frontend or escrow listener would, then prints what happens
to it for a while.

The poster never registers, so it receives no broadcasts; it polls the
read-only HTTP surface instead.

Usage:
    python scripts/post_task.py [title] [bounty_usdc]
"""

import asyncio
import json
import sys
import time
from urllib.request import urlopen
from uuid import uuid4

import websockets

PLAZA_URL = "ws://localhost:8080/ws"
QUERY_URL = "http://localhost:8080"
POSTER_WALLET = "Jz9ZzBlLxOpMrNtOuPwQxRyScTdUfVgWhXiYjZkAlBmC"


def create_envelope(message_type: str, payload: dict = None) -> str:
    """Create a message envelope."""
    return json.dumps({
        "type": message_type,
        "payload": payload or {},
        "timestamp": int(time.time() * 1000),
        "messageId": str(uuid4()),
    })


def fetch_task(task_id: str) -> dict:
    with urlopen(f"{QUERY_URL}/tasks/{task_id}") as response:
        return json.loads(response.read())


async def main():
    title = sys.argv[1] if len(sys.argv) > 1 else "Research competitor landing pages"
    bounty_usdc = float(sys.argv[2]) if len(sys.argv) > 2 else 25.0
    task_id = str(uuid4())

    print("=" * 70)
    print("TASK POSTER")
    print("=" * 70)
    print(f"Task ID: {task_id}")
    print(f"Title:   {title}")
    print(f"Bounty:  {bounty_usdc} USDC")
    print("=" * 70)

    async with websockets.connect(PLAZA_URL) as ws:
        await ws.send(create_envelope("task_announce", {
            "id": task_id,
            "title": title,
            "description": "Posted from scripts/post_task.py",
            "requirements": ["research", "writing"],
            "bountyAmount": int(bounty_usdc * 1_000_000),
            "poster": POSTER_WALLET,
            "taskHash": "QmYwAPJzv5CZsnA625s3Xf2nemtYgPpHdWEz79ojWnPbdG",
        }))
        print("\nTask announced, watching its status (Ctrl+C to quit)\n")

        last_status = None
        for _ in range(30):
            await asyncio.sleep(1)
            task = await asyncio.to_thread(fetch_task, task_id)
            if task["status"] != last_status:
                last_status = task["status"]
                print(f"   status={last_status} assignedAgent={task.get('assignedAgent')}")


if __name__ == "__main__":
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        print("\nBye")
