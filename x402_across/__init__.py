"""Cross-chain x402 payment authorization over the Across bridge."""

from importlib import metadata


def __getattr__(name: str) -> str:
    """Expose the package version via ``x402_across.__version__``."""
    if name == "__version__":
        try:
            return metadata.version("x402-across")
        except metadata.PackageNotFoundError:
            return "0.0.0"
    raise AttributeError(name)


__all__ = ["__version__"]
