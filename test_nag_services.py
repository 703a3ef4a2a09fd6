import base64
import io
import os
import sys
import tempfile
import unittest
from unittest.mock import AsyncMock, MagicMock, Mock, patch

from PIL import Image

sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

from nag_services import (
    CommandAudioPlayer,
    CommandError,
    CommandScreenCapturer,
    MssScreenCapturer,
    OpenAISpeechSynthesizer,
    OpenAIVisionAssessor,
    encode_image,
    run_command,
)


def decode_data_uri(data_uri):
    prefix = "data:image/png;base64,"
    assert data_uri.startswith(prefix)
    return base64.b64decode(data_uri[len(prefix):])


class TestRunCommand(unittest.IsolatedAsyncioTestCase):
    """External commands are awaited to completion."""

    async def test_returns_stdout(self):
        output = await run_command([sys.executable, '-c', 'print("hello")'])
        self.assertEqual(output.strip(), "hello")

    async def test_non_zero_exit_raises(self):
        with self.assertRaises(CommandError) as ctx:
            await run_command([sys.executable, '-c', 'import sys; sys.stderr.write("boom"); sys.exit(3)'])

        self.assertEqual(ctx.exception.returncode, 3)
        self.assertEqual(ctx.exception.stderr, "boom")
        self.assertIn("exit code 3", str(ctx.exception))

    async def test_missing_binary_raises(self):
        with self.assertRaises(FileNotFoundError):
            await run_command(['definitely-not-a-real-command-xyz'])


class TestCommandWrappers(unittest.IsolatedAsyncioTestCase):

    @patch('nag_services.run_command', new_callable=AsyncMock)
    async def test_capture_appends_image_path(self, mock_run):
        capturer = CommandScreenCapturer('screencapture -x')

        await capturer.capture('/tmp/screenshot.png')

        mock_run.assert_awaited_once_with(['screencapture', '-x', '/tmp/screenshot.png'])

    @patch('nag_services.run_command', new_callable=AsyncMock)
    async def test_player_appends_speech_path(self, mock_run):
        player = CommandAudioPlayer('mpg123 -q')

        await player.play('/tmp/speech.mp3')

        mock_run.assert_awaited_once_with(['mpg123', '-q', '/tmp/speech.mp3'])

    @patch('nag_services.run_command', new_callable=AsyncMock)
    async def test_capture_failure_propagates(self, mock_run):
        mock_run.side_effect = CommandError(['screencapture', '-x'], 1, "no permission")
        capturer = CommandScreenCapturer('screencapture -x')

        with self.assertRaises(CommandError):
            await capturer.capture('/tmp/screenshot.png')


class TestMssScreenCapturer(unittest.IsolatedAsyncioTestCase):

    @patch('nag_services.mss')
    async def test_grabs_primary_monitor(self, mock_mss_class):
        sct = Mock()
        sct.monitors = [
            {"left": 0, "top": 0, "width": 3840, "height": 1080},
            {"left": 0, "top": 0, "width": 1920, "height": 1080},
            {"left": 1920, "top": 0, "width": 1920, "height": 1080},
        ]
        sct.grab.return_value = Mock(size=(2, 2), rgb=b"\xff\x00\x00" * 4)
        mock_mss_class.return_value = MagicMock()
        mock_mss_class.return_value.__enter__.return_value = sct

        with tempfile.TemporaryDirectory() as tmp:
            image_path = os.path.join(tmp, 'screenshot.png')
            await MssScreenCapturer().capture(image_path)

            sct.grab.assert_called_once_with(sct.monitors[1])
            with Image.open(image_path) as img:
                self.assertEqual(img.size, (2, 2))
                self.assertEqual(img.getpixel((0, 0)), (255, 0, 0))


class TestEncodeImage(unittest.TestCase):

    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.image_path = os.path.join(self.tmp.name, 'screenshot.png')
        Image.new('RGB', (1600, 1200), color='red').save(self.image_path)

    def tearDown(self):
        self.tmp.cleanup()

    def test_data_uri_of_file(self):
        encoded = encode_image(self.image_path)

        with open(self.image_path, 'rb') as f:
            self.assertEqual(decode_data_uri(encoded), f.read())

    def test_downscale(self):
        encoded = encode_image(self.image_path, max_width=800)

        img = Image.open(io.BytesIO(decode_data_uri(encoded)))
        self.assertEqual(img.size, (800, 600))

    def test_no_upscale(self):
        encoded = encode_image(self.image_path, max_width=4000)

        with open(self.image_path, 'rb') as f:
            self.assertEqual(decode_data_uri(encoded), f.read())

    def test_missing_file(self):
        with self.assertRaises(FileNotFoundError):
            encode_image(os.path.join(self.tmp.name, 'missing.png'))


class TestOpenAIServices(unittest.IsolatedAsyncioTestCase):
    """Thin wrappers around the OpenAI client."""

    def setUp(self):
        self.client = Mock()
        self.client.chat.completions.create = AsyncMock()
        self.client.audio.speech.create = AsyncMock()

    async def test_assessor_returns_reply(self):
        completion = Mock()
        completion.choices = [Mock(message=Mock(content="  Stop scrolling twitter.\n"))]
        self.client.chat.completions.create.return_value = completion
        assessor = OpenAIVisionAssessor(self.client, 'gpt-4o')
        messages = [{"role": "system", "content": "Be strict."}]

        reply = await assessor.assess(messages)

        self.assertEqual(reply, "Stop scrolling twitter.")
        self.client.chat.completions.create.assert_awaited_once_with(model='gpt-4o', messages=messages)

    async def test_assessor_empty_reply(self):
        completion = Mock()
        completion.choices = [Mock(message=Mock(content=None))]
        self.client.chat.completions.create.return_value = completion

        reply = await OpenAIVisionAssessor(self.client, 'gpt-4o').assess([])

        self.assertEqual(reply, "")

    async def test_assessor_errors_propagate(self):
        self.client.chat.completions.create.side_effect = RuntimeError("network down")

        with self.assertRaises(RuntimeError):
            await OpenAIVisionAssessor(self.client, 'gpt-4o').assess([])

    async def test_synthesizer_writes_audio(self):
        self.client.audio.speech.create.return_value = Mock(content=b"ID3fake-mp3")
        synthesizer = OpenAISpeechSynthesizer(self.client)

        with tempfile.TemporaryDirectory() as tmp:
            speech_path = os.path.join(tmp, 'speech.mp3')
            await synthesizer.synthesize("Stop scrolling twitter.", speech_path)

            with open(speech_path, 'rb') as f:
                self.assertEqual(f.read(), b"ID3fake-mp3")

        self.client.audio.speech.create.assert_awaited_once_with(
            model='tts-1',
            voice='nova',
            input="Stop scrolling twitter.",
            response_format="mp3",
        )


if __name__ == '__main__':
    unittest.main()
