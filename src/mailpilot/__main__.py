"""Entry point for running MailPilot as a module.

Usage:
    python -m mailpilot validate-config
    python -m mailpilot --help
"""

from dotenv import load_dotenv

load_dotenv()  # Load .env before any other imports that need env vars

from mailpilot.cli import main  # noqa: E402

if __name__ == "__main__":
    main()
