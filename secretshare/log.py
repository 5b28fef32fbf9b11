import logging

ROOT_LOGGER = "secretshare"
LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'


def _root():
    root = logging.getLogger(ROOT_LOGGER)
    if not root.hasHandlers():
        ch = logging.StreamHandler()
        ch.setLevel(logging.DEBUG)
        formatter = logging.Formatter(LOG_FORMAT)
        ch.setFormatter(formatter)
        root.addHandler(ch)
        root.setLevel(logging.INFO)
    return root


def get_logger(name):
    """Return a module logger attached to the shared secretshare handler."""
    _root()
    return logging.getLogger(name)


def set_debug(enabled):
    _root().setLevel(logging.DEBUG if enabled else logging.INFO)
