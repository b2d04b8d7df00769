import logging


def configure_logging():
    """Configure root logging once and return the application logger."""
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    return logging.getLogger("hm")

__all__ = ["configure_logging"]
