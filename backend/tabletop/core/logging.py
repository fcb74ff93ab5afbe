import logging

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"


def configure_logging(level: str = "INFO") -> None:
    resolved = logging.getLevelName(level.strip().upper())
    if not isinstance(resolved, int):
        resolved = logging.INFO

    root = logging.getLogger()
    if not root.handlers:
        logging.basicConfig(level=resolved, format=LOG_FORMAT)
    root.setLevel(resolved)

    # engineio logs every packet at INFO when its own logger is enabled
    logging.getLogger("engineio.server").setLevel(max(resolved, logging.WARNING))
    logging.getLogger("socketio.server").setLevel(max(resolved, logging.WARNING))
