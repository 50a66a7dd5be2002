import argparse

import uvicorn

from .app import create_app
from .config import configure_logging, get_settings


def main():
    parser = argparse.ArgumentParser(prog="reelwatch", description="Reelwatch video generation job tracker")
    parser.add_argument("--port", type=int, default=8000, help="Port to listen on (default: 8000)")
    parser.add_argument("--host", type=str, default="0.0.0.0", help="Host/IP to bind (default: 0.0.0.0)")
    parser.add_argument("--poll-interval", type=float, default=None, help="Seconds between status polls (default from env or 10)")
    parser.add_argument("--model", type=str, default=None, help="Video model to submit jobs to")
    args = parser.parse_args()

    settings = get_settings()
    if args.poll_interval is not None:
        settings.poll_interval_seconds = max(0.01, args.poll_interval)
    if args.model:
        settings.video_model = args.model

    configure_logging(settings)
    uvicorn.run(create_app(settings), host=args.host, port=args.port)


if __name__ == "__main__":
    main()
