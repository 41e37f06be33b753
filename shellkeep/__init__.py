"""shellkeep — keep a background worker alive across interactive shell sessions."""

from importlib.metadata import version, PackageNotFoundError

try:
    __version__ = version("shellkeep")
except PackageNotFoundError:
    __version__ = "0.1.0"  # fallback for development
