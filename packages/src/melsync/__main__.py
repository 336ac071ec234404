"""``python -m melsync`` / ``melsync`` console script."""

from __future__ import annotations

from melsync import Platform, __version__


def main() -> None:
    Platform(version=__version__).cli()


if __name__ == "__main__":
    main()
