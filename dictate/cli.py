"""
Command-line entry point.

Usage:
    dictate recording.wav other.wav      # one transcript per line on stdout
    dictate                              # microphone; VAD ends each utterance
    dictate --model ./whisper-small-mlx --list-assets
    dictate --list-devices

Logging goes to stderr so transcripts stay clean on stdout.
"""

import argparse
import asyncio
import logging
import os
import signal
import sys
import time
from typing import List, Optional

import numpy as np
from rich.console import Console
from rich.layout import Layout
from rich.live import Live
from rich.logging import RichHandler
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from .audio import (
    DEFAULT_MAX_RECORD_SECONDS,
    DEFAULT_VAD_FRAME_MS,
    DEFAULT_VAD_MODE,
    DEFAULT_VAD_SILENCE_MS,
    AudioMic,
    SpeechEndpointer,
    load_audio,
)
from .decoding import DEFAULT_MAX_STEPS, DecoderConfig
from .engine import (
    DEFAULT_CONFIG_ASSET,
    DEFAULT_DECODER_ASSET,
    DEFAULT_ENCODER_ASSET,
    DEFAULT_TIMEOUT_MS,
    DEFAULT_TOKENIZER_ASSET,
    InferenceError,
    ModelLoader,
)
from .features import DEFAULT_SAMPLE_RATE
from .pipeline import ModelPaths, Transcriber

LOGGER = logging.getLogger("dictate")

DEFAULT_MODEL = "./whisper-small-mlx"
DEFAULT_AUDIO_QUEUE_MAXSIZE = 200
MIN_UTTERANCE_SECONDS = 0.3


class DictationSession:
    """Microphone loop: record until VAD says the utterance ended, then transcribe."""

    def __init__(
        self,
        transcriber: Transcriber,
        mic: AudioMic,
        endpointer: SpeechEndpointer,
        no_ui: bool = False,
    ):
        self.transcriber = transcriber
        self.mic = mic
        self.endpointer = endpointer
        self.no_ui = no_ui
        self.sample_rate = mic.sample_rate

        self.audio_queue: asyncio.Queue = asyncio.Queue(maxsize=DEFAULT_AUDIO_QUEUE_MAXSIZE)
        self.loop: Optional[asyncio.AbstractEventLoop] = None
        # The engine is not re-entrant; one transcription at a time.
        self.engine_lock = asyncio.Lock()

        self.console_out = Console()
        self.console_ui = Console(stderr=True, force_terminal=True)
        self.live: Optional[Live] = None
        self.history: List[str] = []
        self.max_history = 50
        self.asr_ms: Optional[float] = None

    @property
    def state(self):
        return self.transcriber.state

    def _on_block(self, block: np.ndarray) -> None:
        """Runs on the PortAudio thread; hand the block to the event loop."""
        self.loop.call_soon_threadsafe(
            lambda: (
                self.audio_queue.put_nowait(block)
                if not self.audio_queue.full()
                else None
            )
        )

    def _render_status_panel(self) -> Panel:
        status = Text()
        status.append("Status: ", style="bold")
        style = "green" if self.state.recording else "yellow"
        status.append(self.state.status, style=style)
        status.append(" | ")
        status.append(f"VAD: {self.endpointer.state}")
        status.append(" | ")
        status.append(f"Level: {self.mic.level():.2f}")
        return Panel(status, title="Dictate", border_style="blue")

    def _render_transcript_panel(self) -> Panel:
        body = Text()
        for line in self.history[-10:]:
            body.append("> ", style="bold green")
            body.append(line + "\n")
        if self.state.last_error:
            body.append(f"Error: {self.state.last_error}\n", style="red")
        if not self.history and not self.state.last_error:
            body.append("Speak to start a transcript.", style="dim")
        return Panel(body, title="Transcript", border_style="green")

    def _render_stats_panel(self) -> Panel:
        table = Table.grid(padding=(0, 2))
        table.add_column(style="cyan")
        table.add_column()
        table.add_row("Queue", str(self.audio_queue.qsize()))
        table.add_row("ASR", f"{self.asr_ms:.0f} ms" if self.asr_ms else "--")
        negotiated = self.transcriber.negotiator.preferred
        table.add_row("Encoder input", negotiated.name if negotiated else "--")
        return Panel(table, title="Stats", border_style="magenta")

    def _render_ui(self) -> Layout:
        layout = Layout()
        layout.split_column(
            Layout(self._render_status_panel(), name="status", size=3),
            Layout(self._render_transcript_panel(), name="transcript", ratio=2),
            Layout(self._render_stats_panel(), name="stats", size=7),
        )
        return layout

    def _update_ui(self, force: bool = False) -> None:
        if not self.live:
            return
        self.live.update(self._render_ui(), refresh=force)

    def _log_info(self, message: str, *args) -> None:
        """Log only when the live UI is disabled to avoid terminal clutter."""
        if not self.live:
            LOGGER.info(message, *args)

    def _start_recording(self) -> None:
        self.endpointer.reset()
        self.mic.start()
        self.state.recording = True
        self.state.status = "Listening"

    async def _finish_utterance(self) -> None:
        pcm = self.mic.stop()
        self.state.recording = False
        if pcm.size < int(self.sample_rate * MIN_UTTERANCE_SECONDS):
            return

        async with self.engine_lock:
            self._update_ui()
            start = time.perf_counter()
            try:
                text = await asyncio.to_thread(self.transcriber.transcribe, pcm)
            except InferenceError:
                # Already logged and recorded on the transcriber state.
                text = None
            self.asr_ms = (time.perf_counter() - start) * 1000

        if text:
            self.history.append(text)
            self.history = self.history[-self.max_history :]
            if not self.live:
                self.console_out.print(text, markup=False, highlight=False)

    async def _processor(self) -> None:
        self._start_recording()
        while True:
            try:
                block = await asyncio.wait_for(self.audio_queue.get(), timeout=0.1)
            except asyncio.TimeoutError:
                block = None

            ended = block is not None and self.endpointer.update(block)
            if ended or (self.state.recording and not self.mic.is_active()):
                await self._finish_utterance()
                while not self.audio_queue.empty():
                    self.audio_queue.get_nowait()
                self._start_recording()
            self._update_ui()

    async def run(self) -> None:
        """Load models, open the microphone and run until Ctrl+C."""
        self.loop = asyncio.get_running_loop()
        if not self.no_ui:
            self.live = Live(
                self._render_ui(),
                console=self.console_ui,
                refresh_per_second=10,
                transient=False,
            )
            self.live.start()

        self.state.status = "Loading models..."
        self._update_ui(force=True)
        self._log_info("Loading models...")
        try:
            await asyncio.to_thread(self.transcriber.load_models)
        except InferenceError:
            if self.live:
                self.live.stop()
            raise

        self.mic.on_block = self._on_block
        self._log_info("Listening... (Ctrl+C to stop)")
        task = asyncio.create_task(self._processor())

        stop_event = asyncio.Event()

        def signal_handler():
            if not stop_event.is_set():
                self._log_info("Stopping...")
                stop_event.set()

        signal_handler_installed = False
        try:
            self.loop.add_signal_handler(signal.SIGINT, signal_handler)
            signal_handler_installed = True
        except NotImplementedError:
            signal_handler_installed = False

        stopper = asyncio.create_task(stop_event.wait())
        try:
            # A crashed processor (e.g. no input device) also ends the session.
            await asyncio.wait({task, stopper}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            stopper.cancel()
            if signal_handler_installed:
                self.loop.remove_signal_handler(signal.SIGINT)
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
            self.mic.stop()
            self.transcriber.unload_models()
            if self.live:
                self.live.stop()
        if task.done() and not task.cancelled() and task.exception():
            raise task.exception()


# =============================================================================
# Main
# =============================================================================


def build_arg_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="On-device Whisper transcription with exported MLX functions"
    )
    parser.add_argument(
        "audio", nargs="*", help="Audio files to transcribe (default: microphone)"
    )
    parser.add_argument(
        "--model",
        default=DEFAULT_MODEL,
        help="Model directory or Hugging Face repo id with the exported assets",
    )
    parser.add_argument("--encoder-asset", default=DEFAULT_ENCODER_ASSET)
    parser.add_argument("--decoder-asset", default=DEFAULT_DECODER_ASSET)
    parser.add_argument("--tokenizer-asset", default=DEFAULT_TOKENIZER_ASSET)
    parser.add_argument("--config-asset", default=DEFAULT_CONFIG_ASSET)
    parser.add_argument(
        "--max-steps",
        type=int,
        default=DEFAULT_MAX_STEPS,
        help=f"Maximum decode steps (default: {DEFAULT_MAX_STEPS})",
    )
    parser.add_argument(
        "--timeout-ms",
        type=int,
        default=DEFAULT_TIMEOUT_MS,
        help=f"Per-call engine timeout, 0 disables (default: {DEFAULT_TIMEOUT_MS})",
    )
    parser.add_argument(
        "--keep-decoding-after-special",
        action="store_true",
        help="Do not stop at a special token; skip it as context and continue",
    )
    parser.add_argument(
        "--vad-frame-ms",
        type=int,
        default=DEFAULT_VAD_FRAME_MS,
        choices=[10, 20, 30],
        help=f"VAD frame size in ms (default: {DEFAULT_VAD_FRAME_MS})",
    )
    parser.add_argument(
        "--vad-mode",
        type=int,
        default=DEFAULT_VAD_MODE,
        help=f"VAD aggressiveness 0-3 (default: {DEFAULT_VAD_MODE})",
    )
    parser.add_argument(
        "--vad-silence-ms",
        type=int,
        default=DEFAULT_VAD_SILENCE_MS,
        help=f"Silence that ends an utterance (default: {DEFAULT_VAD_SILENCE_MS}ms)",
    )
    parser.add_argument(
        "--max-record-seconds",
        type=float,
        default=DEFAULT_MAX_RECORD_SECONDS,
        help=f"Hard cap per utterance (default: {DEFAULT_MAX_RECORD_SECONDS}s)",
    )
    parser.add_argument("--no-ui", action="store_true", help="Disable the Rich live UI")
    parser.add_argument(
        "--list-devices", action="store_true", help="List audio devices"
    )
    parser.add_argument(
        "--list-assets", action="store_true", help="List files in the model location"
    )
    parser.add_argument("--device", type=int, default=None, help="Audio input device")
    return parser


def list_audio_devices() -> None:
    import sounddevice as sd

    console = Console()
    table = Table(title="Audio Input Devices")
    table.add_column("ID", style="cyan")
    table.add_column("Device", style="white")
    table.add_column("Default", style="green")
    for i, d in enumerate(sd.query_devices()):
        if d["max_input_channels"] > 0:
            is_default = "Yes" if i == sd.default.device[0] else ""
            table.add_row(str(i), d["name"], is_default)
    console.print(table)


def build_transcriber(args: argparse.Namespace) -> Transcriber:
    paths = ModelPaths(
        model=args.model,
        encoder_asset=args.encoder_asset,
        decoder_asset=args.decoder_asset,
        tokenizer_asset=args.tokenizer_asset,
        config_asset=args.config_asset,
    )
    decoder_config = DecoderConfig(
        max_steps=args.max_steps,
        stop_on_special=not args.keep_decoding_after_special,
    )
    return Transcriber.from_model(
        paths,
        decoder_config=decoder_config,
        timeout_ms=args.timeout_ms or None,
    )


def transcribe_files(transcriber: Transcriber, files: List[str]) -> int:
    """Print one transcript per file; exit code 1 if any file failed."""
    console_out = Console()
    transcriber.load_models()
    failed = 0
    try:
        for path in files:
            try:
                samples = load_audio(path, DEFAULT_SAMPLE_RATE)
                text = transcriber.transcribe(samples)
            except (InferenceError, ValueError, RuntimeError) as exc:
                LOGGER.error("%s: %s", path, exc)
                failed += 1
                continue
            console_out.print(text, markup=False, highlight=False)
    finally:
        transcriber.unload_models()
    return 1 if failed else 0


def main(argv: Optional[List[str]] = None) -> int:
    """Provide a CLI entry that returns an exit code."""
    log_level = os.environ.get("LOG_LEVEL", "INFO").upper()
    logging.basicConfig(
        level=log_level,
        format="%(message)s",
        handlers=[
            RichHandler(
                console=Console(stderr=True),
                show_time=False,
                show_path=False,
                rich_tracebacks=False,
            )
        ],
    )
    # Silence chatty HTTP request logs from model downloads.
    logging.getLogger("huggingface_hub").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)
    parser = build_arg_parser()
    args = parser.parse_args(argv)

    if args.list_devices:
        list_audio_devices()
        return 0

    if args.list_assets:
        for name in ModelLoader(args.model).list_assets():
            print(name)
        return 0

    try:
        transcriber = build_transcriber(args)
    except (OSError, ValueError) as exc:
        LOGGER.error("Cannot open model %s: %s", args.model, exc)
        return 2

    if args.audio:
        try:
            return transcribe_files(transcriber, args.audio)
        except InferenceError as exc:
            LOGGER.error("%s", exc)
            return 1

    try:
        endpointer = SpeechEndpointer(
            sample_rate=DEFAULT_SAMPLE_RATE,
            frame_ms=args.vad_frame_ms,
            mode=args.vad_mode,
            silence_ms=args.vad_silence_ms,
        )
    except ValueError as exc:
        parser.error(str(exc))
    mic = AudioMic(
        sample_rate=DEFAULT_SAMPLE_RATE,
        max_seconds=args.max_record_seconds,
        device=args.device,
        block_size=endpointer.frame_samples,
    )
    session = DictationSession(transcriber, mic, endpointer, no_ui=args.no_ui)
    try:
        asyncio.run(session.run())
    except InferenceError as exc:
        LOGGER.error("%s", exc)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
