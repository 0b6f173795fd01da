"""careless-convo — talk to an LLM from the terminal.

Usage
-----
    careless-convo [--config PATH] [--once]

Needs DEEPGRAM_API_KEY for speech recognition.  GROQ_API_KEY enables real
replies and Groq speech; without it replies come from demo mode and are
spoken with the system voice.
Set CONVO_DEBUG=1 for debug logging.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import os

from dotenv import load_dotenv

from .chat import build_voice_chat
from .config import ConvoConfig

log = logging.getLogger("careless_convo.main")

DEFAULT_CONFIG_PATH = "careless_convo.json"
LOG_FORMAT = "%(asctime)s.%(msecs)03d [%(levelname)s] %(name)s – %(message)s"


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="careless-convo", description="Voice chat with an LLM.")
    parser.add_argument(
        "--config", default=os.getenv("CONVO_CONFIG", DEFAULT_CONFIG_PATH),
        help="JSON config file (defaults are used if it does not exist)",
    )
    parser.add_argument(
        "--once", action="store_true",
        help="Handle a single utterance and exit instead of listening continuously",
    )
    return parser.parse_args(argv)


def _print_token(token: str) -> None:
    print(token, end="", flush=True)


async def run(config: ConvoConfig, once: bool = False) -> None:
    chat = build_voice_chat(config, continuous=not once, on_token=_print_token)
    try:
        await chat.start()
        if chat.session.error:
            log.error("event=startup_failed error=%s", chat.session.error)
            return
        if once:
            transcript = await chat.session.wait_finished()
            if transcript is None:
                log.info("event=no_utterance error=%s", chat.session.error)
                return
            print(f"\nYou: {transcript}\nAssistant: ", end="", flush=True)
            await chat.wait_turn()
            print()
        else:
            await asyncio.Event().wait()   # until Ctrl-C
    finally:
        await chat.close()


def main(argv: list[str] | None = None) -> None:
    args = parse_args(argv)
    load_dotenv()
    logging.basicConfig(
        level=logging.DEBUG if os.getenv("CONVO_DEBUG") else logging.INFO,
        format=LOG_FORMAT,
        datefmt="%H:%M:%S",
    )
    config = ConvoConfig.load(args.config)
    try:
        asyncio.run(run(config, once=args.once))
    except KeyboardInterrupt:
        log.info("event=interrupted")


if __name__ == "__main__":
    main()
