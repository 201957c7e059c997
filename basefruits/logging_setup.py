import logging


def init_logging(level: str = "INFO"):
    logging.basicConfig(
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        level=getattr(logging, level.upper(), logging.INFO),
    )
    # httpx logs every request URL at INFO, which would leak delivery endpoints
    logging.getLogger("httpx").setLevel(logging.WARNING)
