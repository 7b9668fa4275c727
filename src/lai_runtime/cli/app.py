import asyncio
import signal
import sys

from rich.console import Console
from rich.progress import BarColumn, DownloadColumn, Progress, TextColumn, TimeRemainingColumn, TransferSpeedColumn
from rich.table import Table

from lai_runtime.core import VLMInference
from lai_runtime.download import DownloadManager
from lai_runtime.errors import DownloadError, FileMissing, InferenceError, NetworkErrorKind
from lai_runtime.shared.logging import LogConfig, collector_context
from lai_runtime.types import DownloadProgress
from lai_runtime.utils.config import Settings

from .parser import parse_arguments

console = Console()


class _ProgressRenderer:
    """Feeds DownloadProgress ticks into a rich progress bar."""

    def __init__(self, progress: Progress, description: str):
        self._progress = progress
        self._task = progress.add_task(description, total=None)

    def __call__(self, tick: DownloadProgress) -> None:
        total = tick.total_bytes or None
        self._progress.update(self._task, completed=tick.bytes_written, total=total)


def _download_progress() -> Progress:
    return Progress(
        TextColumn("[bold blue]{task.description}"),
        BarColumn(),
        DownloadColumn(),
        TransferSpeedColumn(),
        TimeRemainingColumn(),
        console=console,
    )


def show_status(settings: Settings, inference: VLMInference) -> int:
    table = Table(title="lai status", show_header=False)
    table.add_column("Key", style="cyan")
    table.add_column("Value")

    try:
        engine = inference.dispatcher.resolve()
        engine_desc = f"{engine.name} ({engine.model_name}, {engine.CANCEL_STYLE.value}-cancel)"
        vision = "yes" if engine.SUPPORTS_VISION else "no"
    except InferenceError as e:
        engine_desc = f"[red]{e}[/red]"
        vision = "-"

    path = settings.model_path
    if DownloadManager.exists(path):
        artifact = f"[green]present[/green] ({path.stat().st_size:,} bytes)"
    else:
        artifact = "[yellow]missing[/yellow]"

    table.add_row("Platform", inference.get_platform())
    table.add_row("Engine", engine_desc)
    table.add_row("Vision", vision)
    table.add_row("Model path", str(path))
    table.add_row("Artifact", artifact)
    table.add_row("Source", settings.MODEL_URL)
    console.print(table)
    return 0


async def run_download(settings: Settings) -> int:
    manager = DownloadManager(chunk_size=settings.DOWNLOAD_CHUNK_SIZE)
    if manager.exists(settings.model_path):
        console.print(f"[dim]Model already present at {settings.model_path}[/dim]")
        return 0

    with _download_progress() as progress:
        renderer = _ProgressRenderer(progress, settings.MODEL_FILE_NAME)
        try:
            await manager.download(
                settings.MODEL_URL,
                settings.model_path,
                auth_token=settings.MODEL_AUTH_TOKEN or None,
                on_progress=renderer,
            )
        except DownloadError as e:
            progress.stop()
            console.print(f"[bold red]Download failed:[/bold red] {e.user_message}")
            if e.kind is not NetworkErrorKind.OTHER:
                console.print("[dim]Run `lai download` again to retry.[/dim]")
            return 1

    console.print(f"[green]Download complete:[/green] {settings.model_path}")
    return 0


async def run_ask(inference: VLMInference, prompt: str, image: str | None) -> int:
    with _download_progress() as progress:
        renderer = None

        def on_progress(tick: DownloadProgress) -> None:
            nonlocal renderer
            if renderer is None:
                renderer = _ProgressRenderer(progress, "Downloading model")
            renderer(tick)

        try:
            await inference.initialize(on_progress=on_progress)
        except FileMissing as e:
            progress.stop()
            message = e.download_error.user_message if e.download_error else str(e)
            console.print(f"[bold red]Model unavailable:[/bold red] {message}")
            return 1
        except InferenceError as e:
            progress.stop()
            console.print(f"[bold red]Error:[/bold red] {e}")
            return 1

    loop = asyncio.get_running_loop()
    stop_task: asyncio.Task | None = None

    def _request_stop() -> None:
        nonlocal stop_task
        if stop_task is not None:
            return
        console.print("\n[yellow]Stopping generation...[/yellow]")
        stop_task = loop.create_task(inference.stop_generation())

    try:
        loop.add_signal_handler(signal.SIGINT, _request_stop)
    except (NotImplementedError, RuntimeError):
        pass

    exit_code = 0
    try:
        await inference.generate_streaming(
            prompt,
            on_token=lambda text: console.print(text, end="", markup=False, highlight=False),
            image=image,
        )
        console.print()
    except InferenceError as e:
        console.print(f"\n[bold red]Error:[/bold red] {e}")
        exit_code = 1
    finally:
        try:
            loop.remove_signal_handler(signal.SIGINT)
        except (NotImplementedError, RuntimeError):
            pass
        if stop_task is not None:
            try:
                await stop_task
            except InferenceError as e:
                console.print(f"[yellow]Stop failed:[/yellow] {e}")
        await inference.unload()
    return exit_code


def main(argv: list[str] | None = None) -> None:
    try:
        settings = Settings()
    except Exception as e:
        console.print(f"[bold red]Error initializing configuration:[/bold red] {e}")
        sys.exit(1)

    args = parse_arguments(settings, argv)
    settings.VERBOSE = args.verbose
    settings.DEBUG = args.debug
    if args.engine:
        settings.ENGINE = args.engine

    LogConfig.configure(verbose=args.verbose, debug=args.debug)
    renderer = LogConfig.get_renderer(console, verbose=args.verbose, debug=args.debug)
    collector = LogConfig.new_collector()

    inference = VLMInference(settings)
    with collector_context(collector):
        if args.command == "status":
            code = show_status(settings, inference)
        elif args.command == "download":
            code = asyncio.run(run_download(settings))
        else:
            code = asyncio.run(run_ask(inference, " ".join(args.prompt), args.image))

    renderer.render_flow(collector)
    sys.exit(code)
