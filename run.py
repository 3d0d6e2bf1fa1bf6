#!/usr/bin/env python3
"""
Convenience script to run Trellis.
"""

import sys
from pathlib import Path

# Add src to path
src_path = Path(__file__).parent / "src"
sys.path.insert(0, str(src_path))


def run_cli():
    """Run the CLI application."""
    from trellis.cli import app
    app()


def run_api():
    """Run the FastAPI server."""
    import uvicorn
    uvicorn.run(
        "trellis.api.main:app",
        host="0.0.0.0",
        port=8000,
        reload=True,
    )


def run_jobs():
    """Run every scheduled job once."""
    from trellis.automations.batch_processor import BatchProcessor
    BatchProcessor().run_all()


if __name__ == "__main__":
    if len(sys.argv) < 2:
        print("Usage: python run.py <command>")
        print()
        print("Commands:")
        print("  cli       Run the command-line interface")
        print("  api       Start the FastAPI web server")
        print("  jobs      Run the scheduled jobs once")
        sys.exit(1)

    command = sys.argv[1]
    sys.argv = [sys.argv[0]] + sys.argv[2:]  # Remove command from args

    commands = {
        "cli": run_cli,
        "api": run_api,
        "jobs": run_jobs,
    }

    if command not in commands:
        print(f"Unknown command: {command}")
        sys.exit(1)

    commands[command]()
