"""Entrypoint for `python -m heap_rebuild`."""

from .cli import main


if __name__ == "__main__":
    main()
