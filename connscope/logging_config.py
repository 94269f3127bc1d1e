import logging


def setup_logging(level: str = "INFO"):
    levelno = getattr(logging, str(level).upper(), logging.INFO)
    fmt = "%(asctime)s %(levelname)s [%(name)s] %(message)s"
    logging.basicConfig(level=levelno, format=fmt)
    # httpx logs every request at INFO, which floods the console at 1 push/s
    logging.getLogger("httpx").setLevel(max(levelno, logging.WARNING))
