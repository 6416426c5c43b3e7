"""Chorus entry point."""

import asyncio
import sys

from dotenv import find_dotenv, load_dotenv

from .cli import run_cli


def main() -> None:
    """Main entry point."""
    load_dotenv(find_dotenv(usecwd=True))

    if len(sys.argv) > 1:
        command = sys.argv[1]

        if command == "models":
            from .cli import run_models_cli

            sys.exit(run_models_cli(sys.argv[2:]))

        if command == "skills":
            from .cli import run_skills_cli

            sys.exit(run_skills_cli(sys.argv[2:]))

    try:
        asyncio.run(run_cli())
    except KeyboardInterrupt:
        print("\n👋 Goodbye!")


if __name__ == "__main__":
    main()
