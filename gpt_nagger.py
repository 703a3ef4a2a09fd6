#!/usr/bin/env python3
"""
GPT Nagger - periodically looks at your screen and tells you off when you slack.

Every INTERVAL milliseconds the screen is captured, shown to a vision model
together with the last few warnings, and any reprimand is spoken out loud.
"""
import argparse
import asyncio
import json
import os
import signal
import sys
import traceback
from collections import deque
from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Tuple

from dotenv import load_dotenv, find_dotenv
from openai import AsyncOpenAI

from nag_prompts import NagPromptBuilder, is_good_boy
from nag_services import (
    CommandAudioPlayer,
    CommandScreenCapturer,
    MssScreenCapturer,
    OpenAISpeechSynthesizer,
    OpenAIVisionAssessor,
    encode_image,
)

INSTALL_DIR = os.path.dirname(os.path.abspath(__file__))

MAX_HISTORY = 3
DEFAULT_INTERVAL_MS = 30 * 1000
MSS_CAPTURE = 'mss'


@dataclass
class NagConfig:
    api_key: str
    goal: str = 'write scripts'
    image_path: str = os.path.join(INSTALL_DIR, 'screenshot.png')
    speech_path: str = os.path.join(INSTALL_DIR, 'speech.mp3')
    screen_capture_cmd: str = 'screencapture -x'
    play_speech_cmd: str = 'afplay'
    interval_ms: int = DEFAULT_INTERVAL_MS
    vision_model: str = 'gpt-4o'
    tts_model: str = 'tts-1'
    tts_voice: str = 'nova'
    image_max_width: int = 0
    debug: bool = False

    @classmethod
    def from_env(cls, environ=None):
        """Build the configuration from environment variables, once, at startup."""
        env = os.environ if environ is None else environ

        api_key = env.get('OPENAI_API_KEY')
        if not api_key:
            raise ValueError(
                "No API key found. Please set OPENAI_API_KEY in your environment or .env file.\n"
                "Get your API key from https://platform.openai.com/api-keys"
            )

        return cls(
            api_key=api_key,
            goal=env.get('PROMPT_GOAL') or cls.goal,
            image_path=env.get('IMAGE_PATH') or cls.image_path,
            speech_path=env.get('SPEECH_PATH') or cls.speech_path,
            screen_capture_cmd=env.get('SCREEN_CAPTURE_CMD') or cls.screen_capture_cmd,
            play_speech_cmd=env.get('PLAY_SPEECH_CMD') or cls.play_speech_cmd,
            interval_ms=_parse_int('INTERVAL', env.get('INTERVAL'), DEFAULT_INTERVAL_MS),
            vision_model=env.get('VISION_MODEL') or cls.vision_model,
            tts_model=env.get('TTS_MODEL') or cls.tts_model,
            tts_voice=env.get('TTS_VOICE') or cls.tts_voice,
            image_max_width=_parse_int('IMAGE_MAX_WIDTH', env.get('IMAGE_MAX_WIDTH'), 0),
            debug=env.get('DEBUG', 'false').lower() == 'true',
        )


def _parse_int(name, value, default):
    if not value:
        return default
    try:
        parsed = int(value)
    except ValueError:
        raise ValueError(f"{name} must be a whole number, got {value!r}") from None
    if parsed < 0:
        raise ValueError(f"{name} must not be negative, got {parsed}")
    return parsed


@dataclass
class NagRecord:
    date: datetime
    text: Optional[str]
    screenshot_encoded: str


class NagHistory:
    """The last few nags that actually fired, oldest first."""

    def __init__(self, limit=MAX_HISTORY):
        self.records = deque(maxlen=limit)

    def append(self, record: NagRecord):
        # On-task checks never make it into the history
        if not record.text:
            return
        self.records.append(record)

    @property
    def last(self) -> Optional[NagRecord]:
        return self.records[-1] if self.records else None

    def __iter__(self):
        return iter(self.records)

    def __len__(self):
        return len(self.records)


class CancellationToken:
    """Cooperative stop flag, checked by the loop between nags."""

    def __init__(self):
        self._event = asyncio.Event()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self):
        self._event.set()

    async def wait(self, seconds) -> bool:
        """Sleep for the given number of seconds, returning early on cancellation."""
        try:
            await asyncio.wait_for(self._event.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass
        return self.cancelled


def install_interrupt_handler(token: CancellationToken, loop=None):
    """First Ctrl+C stops the loop after the current nag, a second one exits right away."""
    loop = loop or asyncio.get_running_loop()

    def on_interrupt():
        print("\nExiting...")
        if token.cancelled:
            sys.stdout.flush()
            os._exit(1)
        token.cancel()

    try:
        loop.add_signal_handler(signal.SIGINT, on_interrupt)
    except NotImplementedError:
        # Windows event loops have no add_signal_handler
        signal.signal(signal.SIGINT, lambda signum, frame: loop.call_soon_threadsafe(on_interrupt))


class GptNagger:
    def __init__(self, config: NagConfig, capturer, assessor, synthesizer, player,
                 prompt_builder=None, token=None):
        self.config = config
        self.capturer = capturer
        self.assessor = assessor
        self.synthesizer = synthesizer
        self.player = player
        self.prompt_builder = prompt_builder or NagPromptBuilder(config.goal)
        self.token = token or CancellationToken()
        self.history = NagHistory()
        self.debug = config.debug

    @classmethod
    def from_config(cls, config: NagConfig):
        """Wire up the real OpenAI client and external commands."""
        client = AsyncOpenAI(api_key=config.api_key)

        if config.screen_capture_cmd.strip().lower() == MSS_CAPTURE:
            capturer = MssScreenCapturer()
        else:
            capturer = CommandScreenCapturer(config.screen_capture_cmd)

        return cls(
            config,
            capturer=capturer,
            assessor=OpenAIVisionAssessor(client, config.vision_model),
            synthesizer=OpenAISpeechSynthesizer(client, config.tts_model, config.tts_voice),
            player=CommandAudioPlayer(config.play_speech_cmd),
        )

    def debug_log(self, message, data=None):
        """Print debug information if debug mode is enabled."""
        if self.debug:
            timestamp = datetime.now().strftime("%H:%M:%S")
            print(f"\n[DEBUG {timestamp}] {message}")
            if data:
                if isinstance(data, str) and len(data) > 100:
                    print(f"Data: {data[:100]}... (truncated)")
                else:
                    print(f"Data: {json.dumps(data, indent=2)}")

    async def perform_nag(self, history) -> Tuple[Optional[str], str]:
        """Capture the screen, ask the model about it and speak any reprimand.

        Returns (message, screenshot data URI). The message is None when the
        model says the user is on task; the screenshot is returned either way.
        Nothing here is retried: any failure propagates to the caller.
        """
        print("📸 Capturing screen...")
        await self.capturer.capture(self.config.image_path)

        print("🔍 Analyzing...")
        screenshot = encode_image(self.config.image_path, self.config.image_max_width)
        self.debug_log(f"Encoded screenshot: {len(screenshot) / 1024:.1f}KB")

        messages = self.prompt_builder.build_messages(history, screenshot)
        self.debug_log(f"Sending {len(messages)} messages to {self.config.vision_model}", [
            message if message["role"] != "user" else {"role": "user", "content": "[IMAGES + INSTRUCTIONS]"}
            for message in messages
        ])
        message = await self.assessor.assess(messages)

        print("---\n" + message + "\n---")

        if not message or is_good_boy(message):
            print("✅ On task.")
            return None, screenshot

        print("🗣️ Nagging...")
        await self.synthesizer.synthesize(message, self.config.speech_path)
        self.debug_log(f"Speech written to {self.config.speech_path}")
        await self.player.play(self.config.speech_path)

        return message, screenshot

    async def run(self, max_iterations=None) -> int:
        """Nag every interval until cancelled. Returns the number of nags performed."""
        interval = self.config.interval_ms / 1000
        iterations = 0

        while not self.token.cancelled:
            print(f"\n[{datetime.now().isoformat()}]\nLet's see how you're doing...")

            message, screenshot = await self.perform_nag(self.history)
            if message:
                self.history.append(NagRecord(datetime.now(), message, screenshot))
                self.debug_log(f"History now holds {len(self.history)} nag(s)")
            iterations += 1

            if self.token.cancelled:
                break
            if max_iterations is not None and iterations >= max_iterations:
                break

            self.debug_log(f"Waiting {interval} seconds until next check...")
            await self.token.wait(interval)

        return iterations


async def run_nagger(config: NagConfig, max_iterations=None):
    nagger = GptNagger.from_config(config)
    install_interrupt_handler(nagger.token)

    print(f"GPT Nagger is running. Checking every {config.interval_ms / 1000:g} seconds that you {config.goal}.")
    print("Press Ctrl+C to stop (twice to quit immediately).")
    if config.debug:
        print("\nRunning in DEBUG mode - detailed logging enabled")

    return await nagger.run(max_iterations=max_iterations)


def main(argv=None):
    parser = argparse.ArgumentParser(description='GPT Nagger - a vision model that keeps you on task')
    parser.add_argument('--debug', action='store_true', help='Enable debug mode with detailed logging')
    parser.add_argument('--interval', type=int, help='Check interval in milliseconds (default: INTERVAL or 30000)')
    parser.add_argument('--goal', help='What you are trying to get done (default: PROMPT_GOAL or "write scripts")')
    args = parser.parse_args(argv)

    load_dotenv(find_dotenv(usecwd=True))

    try:
        config = NagConfig.from_env()
        if args.debug:
            config.debug = True
        if args.interval is not None:
            config.interval_ms = args.interval
        if args.goal:
            config.goal = args.goal

        asyncio.run(run_nagger(config))
    except Exception:
        traceback.print_exc()
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
