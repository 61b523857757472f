import logging
import sys


# SDK transports that log every HTTP call at INFO
_CHATTY_LOGGERS = ("httpx", "httpcore", "groq._base_client")


def configure_logging(level: str = "INFO") -> None:
	root_logger = logging.getLogger()
	root_logger.setLevel(logging.getLevelName(level.upper()))
	for name in _CHATTY_LOGGERS:
		logging.getLogger(name).setLevel(logging.WARNING)
	if root_logger.handlers:
		return

	handler = logging.StreamHandler(sys.stdout)
	handler.setFormatter(logging.Formatter(
		"%(asctime)s | %(levelname)s | %(name)s | %(message)s",
		datefmt="%Y-%m-%d %H:%M:%S",
	))
	root_logger.addHandler(handler)
