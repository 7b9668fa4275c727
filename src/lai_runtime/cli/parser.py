import argparse

from lai_runtime.utils.config import Settings


def parse_arguments(settings: Settings, argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="lai", description="Run an on-device vision-language model from the command line")
    parser.add_argument("--verbose", action="store_true", help="Enable verbose output")
    parser.add_argument("--debug", action="store_true", help="Enable debug logging output.")
    parser.add_argument("--engine", type=str, default=None, help=f"Engine to use (default: {settings.ENGINE})")

    sub = parser.add_subparsers(dest="command", required=True)
    sub.add_parser("status", help="Show resolved engine and model artifact status")
    sub.add_parser("download", help=f"Download the model artifact to {settings.model_path}")

    ask = sub.add_parser("ask", help="Stream a response for a prompt")
    ask.add_argument("prompt", nargs="+", help="Prompt text")
    ask.add_argument("-i", "--image", type=str, default=None, help="Path to an image to describe")
    return parser.parse_args(argv)
