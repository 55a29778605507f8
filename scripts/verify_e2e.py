#!/usr/bin/env python3
"""
Enqueues one generation job against a running service, follows its stream with the
resumable reader, and reports the outcome. Requires the dispatcher and a generation
gateway to be up.
"""
import asyncio
import sys
import uuid

import httpx

from stream_sdk import CheckpointManager, MemoryKeyValueStore, ReaderOutcome, ResumableReader, StreamClient

API_URL = "http://localhost:8000"
OWNER_ID = "owner-e2e"


async def wait_for_api():
    print("Waiting for API to be ready...")
    async with httpx.AsyncClient(base_url=API_URL, timeout=5.0) as check_client:
        for _ in range(30):
            try:
                resp = await check_client.get("/health")
                if resp.status_code == 200:
                    print("API is ready!")
                    return True
            except httpx.HTTPError:
                pass
            await asyncio.sleep(1)
    print("API failed to become ready.")
    return False


async def verify():
    if not await wait_for_api():
        return 1

    client = StreamClient(API_URL, OWNER_ID)
    checkpoints = CheckpointManager(MemoryKeyValueStore())
    message_id = f"msg-{uuid.uuid4()}"

    try:
        print("Submitting job...")
        job = await client.enqueue(
            message_id,
            "conv-e2e",
            {"model": "default", "messages": [{"role": "user", "content": "Write a short welcome email."}]},
        )
        print(f"Job created: {job['id']}")

        # Give the dispatcher a moment to claim it
        for _ in range(30):
            status = (await client.get_job(job["id"]))["status"]
            if status != "queued":
                break
            await asyncio.sleep(0.5)

        renders = 0

        def on_update(state):
            nonlocal renders
            renders += 1

        reader = ResumableReader(client, checkpoints, job["id"], "conv-e2e", message_id, on_update=on_update)
        result = await reader.run()

        print(f"Outcome: {result.outcome} after {renders} renders")
        print(f"Content: {result.state.content[:200]!r}")

        if result.outcome == ReaderOutcome.COMPLETED:
            message = await client.get_message(job["id"])
            if message is None or message["content"] != result.state.content:
                print("FAILURE: Stored message differs from streamed content.")
                return 1
            print("SUCCESS: Job completed and stream matches the stored message.")
            return 0

        print(f"FAILURE: Job did not complete ({result.error}).")
        return 1
    finally:
        await client.close()


if __name__ == "__main__":
    sys.exit(asyncio.run(verify()))
