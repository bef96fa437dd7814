import logging

_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"


def configure_logging(level: str = "INFO") -> None:
    """Configure root logging once per process."""
    logging.basicConfig(level=level.upper(), format=_FORMAT)
    # botocore logs every request at INFO
    logging.getLogger("botocore").setLevel(logging.WARNING)
