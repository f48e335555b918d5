import logging, json, sys, time, os

VERBOSE = 15
logging.addLevelName(VERBOSE, "VERBOSE")

LEVELS = {
    "SILENT": logging.CRITICAL + 10,
    "QUIET": logging.CRITICAL + 10,
    "ERROR": logging.ERROR,
    "INFO": logging.INFO,
    "VERBOSE": VERBOSE,
    "DEBUG": logging.DEBUG,
}


def level_from_name(name) -> int:
    if isinstance(name, int):
        return name
    try:
        return LEVELS[str(name).upper()]
    except KeyError:
        raise ValueError(f"unknown log level: {name}") from None


def get_logger(name="monkeysphere", level=logging.INFO, to_file=None):
    """Unified structured logger for all monkeysphere components."""
    logger = logging.getLogger(name)
    logger.setLevel(level_from_name(level))

    if not logger.handlers:
        # stdout carries key material and generated lines
        handler = logging.StreamHandler(sys.stderr)
        formatter = logging.Formatter(
            fmt=json.dumps({
                "ts": "%(asctime)s",
                "level": "%(levelname)s",
                "name": "%(name)s",
                "msg": "%(message)s"
            }),
            datefmt="%Y-%m-%dT%H:%M:%SZ",
        )
        formatter.converter = time.gmtime  # Use UTC timestamps
        handler.setFormatter(formatter)
        logger.addHandler(handler)

        if to_file:
            os.makedirs(os.path.dirname(to_file) or ".", exist_ok=True)
            file_handler = logging.FileHandler(to_file)
            file_handler.setFormatter(formatter)
            logger.addHandler(file_handler)

    return logger


def verbose(logger: logging.Logger, msg, *args):
    logger.log(VERBOSE, msg, *args)
