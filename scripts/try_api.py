#!/usr/bin/env python3
"""Smoke test for a running VQA Gateway.

Sends two malformed requests to check validation, then one one-pass turn and
an iterative conversation (first turn + one follow-up) using a 1x1 PNG, and
prints the streamed text as it arrives."""

from __future__ import annotations

import argparse
import asyncio
import sys

import httpx

from vqa_gateway.client import Conversation, VQAClient, VQAClientError
from vqa_gateway.core.exceptions import EventStreamError
from vqa_gateway.schemas.process import SessionMode

# Minimal 1x1 red pixel PNG in base64
TINY_RED_PNG = (
    "iVBORw0KGgoAAAANSUhEUgAAAAEAAAABCAYAAAAfFcSJAAAADUlEQVR42mP8/5+hHgAHggJ/PchI7wAAAABJRU5ErkJggg=="
)


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument("--base-url", default="http://localhost:8000")
    parser.add_argument("--follow-up", default="What color is it exactly?")
    return parser.parse_args()


async def check_validation(client: VQAClient) -> None:
    print("--- Testing Validation ---\n")
    for label, payload in (
        ("Missing fields", {}),
        ("Invalid mode", {"image": TINY_RED_PNG, "mode": "invalid"}),
    ):
        response = await client.client.post(client.url, json=payload)
        print(f"{label}: {response.status_code} - {response.json()}")


async def run_turn(conversation: Conversation, user_message: str | None = None) -> None:
    total = 0
    try:
        async for text in conversation.send(user_message):
            sys.stdout.write(text)
            sys.stdout.flush()
            total += len(text)
    except (VQAClientError, EventStreamError) as e:
        print(f"\nError: {e}")
        return
    print(f"\n\n--- Stream complete ({total} chars) ---\n")


async def main() -> None:
    args = parse_args()
    client = VQAClient(args.base_url)
    try:
        await check_validation(client)

        print("\n--- Testing One Pass Mode ---\n")
        conversation = Conversation(client=client)
        conversation.set_image(TINY_RED_PNG)
        await run_turn(conversation)

        print("--- Testing Iterative Mode ---\n")
        conversation.set_mode(SessionMode.iterative)
        await run_turn(conversation)
        print(f"> {args.follow_up}\n")
        await run_turn(conversation, args.follow_up)
    except httpx.HTTPError as e:
        print(f"Cannot reach {args.base_url}: {e}")
    finally:
        await client.aclose()


if __name__ == "__main__":
    asyncio.run(main())
