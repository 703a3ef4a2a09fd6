"""
Capabilities the nag loop talks to: screen capture, speech playback,
vision assessment and speech synthesis.

Each capability is a small base class with one async method. The real
implementations shell out to external commands or call the OpenAI API;
tests swap in fakes.
"""
import asyncio
import base64
import io
import shlex
import subprocess
from typing import Any, Dict, List, Sequence

from mss import mss
from openai import AsyncOpenAI
from PIL import Image


class CommandError(RuntimeError):
    """An external command exited with a non-zero status."""

    def __init__(self, args: Sequence[str], returncode: int, stderr: str = ""):
        self.command = list(args)
        self.returncode = returncode
        self.stderr = stderr
        message = f"Command {shlex.join(self.command)!r} failed with exit code {returncode}"
        if stderr:
            message += f": {stderr}"
        super().__init__(message)


async def run_command(args: Sequence[str]) -> str:
    """Run an external command to completion and return its stdout."""
    process = await asyncio.create_subprocess_exec(
        *args,
        stdout=subprocess.PIPE,
        stderr=subprocess.PIPE,
        # Keep Ctrl+C in the terminal from killing a capture or playback mid-way
        start_new_session=True
    )
    stdout, stderr = await process.communicate()
    if process.returncode != 0:
        raise CommandError(args, process.returncode, stderr.decode(errors='replace').strip())
    return stdout.decode(errors='replace')


def encode_image(image_path, max_width=0):
    """Read an image file and return it as a PNG data URI.

    Images wider than max_width are downscaled first, keeping the aspect ratio.
    A max_width of 0 sends the file as-is.
    """
    with open(image_path, 'rb') as f:
        data = f.read()

    if max_width:
        img = Image.open(io.BytesIO(data))
        if img.width > max_width:
            ratio = max_width / img.width
            new_size = (max_width, int(img.height * ratio))
            img = img.resize(new_size, Image.Resampling.LANCZOS)

            img_buffer = io.BytesIO()
            img.save(img_buffer, format='PNG', optimize=True)
            data = img_buffer.getvalue()

    return f"data:image/png;base64,{base64.b64encode(data).decode()}"


class ScreenCapturer:
    async def capture(self, image_path):
        raise NotImplementedError


class AudioPlayer:
    async def play(self, audio_path):
        raise NotImplementedError


class VisionAssessor:
    async def assess(self, messages: List[Dict[str, Any]]) -> str:
        raise NotImplementedError


class SpeechSynthesizer:
    async def synthesize(self, text: str, audio_path):
        raise NotImplementedError


class CommandScreenCapturer(ScreenCapturer):
    """Captures the screen with an external command, e.g. `screencapture -x`."""

    def __init__(self, command: str):
        self.command = shlex.split(command)

    async def capture(self, image_path):
        await run_command(self.command + [str(image_path)])


class MssScreenCapturer(ScreenCapturer):
    """Captures the primary monitor with mss, for platforms without `screencapture`."""

    def _grab(self, image_path):
        with mss() as sct:
            # monitors[0] is the union of all monitors
            monitor = sct.monitors[1] if len(sct.monitors) > 1 else sct.monitors[0]
            screenshot = sct.grab(monitor)
            img = Image.frombytes('RGB', screenshot.size, screenshot.rgb)
            img.save(image_path, format='PNG')

    async def capture(self, image_path):
        await asyncio.to_thread(self._grab, image_path)


class CommandAudioPlayer(AudioPlayer):
    """Plays an audio file with an external command, e.g. `afplay`."""

    def __init__(self, command: str):
        self.command = shlex.split(command)

    async def play(self, audio_path):
        await run_command(self.command + [str(audio_path)])


class OpenAIVisionAssessor(VisionAssessor):
    def __init__(self, client: AsyncOpenAI, model: str):
        self.client = client
        self.model = model

    async def assess(self, messages):
        completion = await self.client.chat.completions.create(
            model=self.model,
            messages=messages
        )
        return (completion.choices[0].message.content or "").strip()


class OpenAISpeechSynthesizer(SpeechSynthesizer):
    def __init__(self, client: AsyncOpenAI, model: str = 'tts-1', voice: str = 'nova'):
        self.client = client
        self.model = model
        self.voice = voice

    async def synthesize(self, text, audio_path):
        response = await self.client.audio.speech.create(
            model=self.model,
            voice=self.voice,
            input=text,
            response_format="mp3",
        )
        with open(audio_path, 'wb') as f:
            f.write(response.content)
