"""
Entry point for the chat client.

    python -m chatflow.client run --email alice@example.com
"""
from .cli import app


def main():
    """Launch the command line chat client.

    Side Effects:
        - Prompts for the password if it was not given
        - Runs until the stream closes or the user interrupts
    """
    app()


if __name__ == "__main__":
    main()
