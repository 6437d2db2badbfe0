"""Terminal client for the tutor backend.

Usage:
    uvicorn tutor_backend.app:app --port 8000
    python quick_launch/launch.py <username>

Type a message to talk to the tutor (``/quiz`` and ``/image <prompt>`` work
too). ``:play N`` narrates message N, ``:tts on|off`` toggles narration,
``:new`` starts a new conversation, ``:voice <id>`` changes the voice and
``:quit`` exits. Narration audio is played on the local output device.
"""
import asyncio
import json
import logging
import sys

import httpx
import numpy as np
import sounddevice as sd
import websockets

logging.basicConfig(level=logging.INFO, format="[tutor-client] %(message)s")
logger = logging.getLogger(__name__)

BASE_URL = "http://127.0.0.1:8000"
WS_BASE = "ws://127.0.0.1:8000"


async def choose_subject(client: httpx.AsyncClient) -> str:
    resp = await client.post("/sign-in")
    resp.raise_for_status()
    subjects = list(resp.json()["sessions"])
    for i, subject in enumerate(subjects):
        print(f"  [{i}] {subject}")
    choice = (await asyncio.to_thread(input, "subject number, or a new subject name: ")).strip()
    if choice.isdigit() and int(choice) < len(subjects):
        subject = subjects[int(choice)]
        (await client.post(f"/subjects/{subject}/select")).raise_for_status()
        return subject

    goal = await asyncio.to_thread(input, "goal: ")
    level = await asyncio.to_thread(input, "level: ")
    resp = await client.post("/subjects", json={"subject": choice, "goal": goal, "level": level}, timeout=120.0)
    resp.raise_for_status()
    print(resp.json()["conversations"][0][0]["content"])
    return choice


async def listen_events(user: str) -> None:
    url = f"{WS_BASE}/ws/events/{user}"
    printed = 0
    sample_rate = 24000
    async with websockets.connect(url, ping_interval=None, ping_timeout=None) as ws:
        logger.info(f"listening for events on {url}")
        while True:
            msg = await ws.recv()
            if isinstance(msg, bytes):
                audio = np.frombuffer(msg, dtype=np.int16).copy()
                sd.play(audio, samplerate=sample_rate)
                continue
            data = json.loads(msg)
            msg_type = data.get("type")
            if msg_type == "turn":
                last = data["messages"][-1]
                if last["role"] != "model":
                    printed = 0
                    continue
                content = last["content"]
                if len(content) >= printed:
                    print(content[printed:], end="", flush=True)
                else:
                    # follow-up block was split off after streaming
                    print()
                printed = len(content)
                for question in last.get("suggestedQuestions") or []:
                    print(f"\n  ? {question}", end="")
            elif msg_type == "sessions":
                if printed:
                    print()
                printed = 0
            elif msg_type == "audio":
                sample_rate = data.get("sample_rate", sample_rate)
            elif msg_type == "stop":
                sd.stop()
            elif msg_type == "playback":
                logger.debug("playback: %s", data)
            elif msg_type == "notification":
                logger.warning(data.get("message"))


async def repl(client: httpx.AsyncClient) -> None:
    while True:
        line = (await asyncio.to_thread(input, "\n> ")).strip()
        if not line:
            continue
        if line == ":quit":
            return
        if line.startswith(":play "):
            resp = await client.post("/audio/play", json={"index": int(line.split()[1])}, timeout=60.0)
        elif line.startswith(":tts "):
            resp = await client.put("/audio/enabled", json={"enabled": line.split()[1] == "on"})
        elif line == ":new":
            subject = (await client.get("/sessions")).json()["current_subject"]
            resp = await client.post(f"/subjects/{subject}/conversations", timeout=120.0)
        elif line.startswith(":voice "):
            subject = (await client.get("/sessions")).json()["current_subject"]
            resp = await client.put(f"/subjects/{subject}/voice", json={"voice": line.split()[1]})
        else:
            resp = await client.post("/messages", json={"text": line}, timeout=300.0)
        if resp.status_code >= 400:
            logger.warning(resp.json().get("detail"))


async def main(user: str) -> None:
    async with httpx.AsyncClient(base_url=BASE_URL, headers={"X-User": user}, timeout=30.0) as client:
        subject = await choose_subject(client)
        logger.info(f"user={user} subject={subject}")
        listener = asyncio.create_task(listen_events(user))
        try:
            await repl(client)
        finally:
            listener.cancel()
            sd.stop()


if __name__ == "__main__":
    if len(sys.argv) < 2:
        print(__doc__)
        sys.exit(1)
    try:
        asyncio.run(main(sys.argv[1]))
    except KeyboardInterrupt:
        logger.info("Exiting tutor client")
