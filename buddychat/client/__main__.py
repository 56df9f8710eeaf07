"""
Entry point for the chat client: ``python -m buddychat.client --name alice``.
"""
from .cli import app


def main():
    app()


if __name__ == "__main__":
    main()
