import logging
import logging.handlers
import os
from typing import Optional, Union


def setup_logger(name: str = 'erosion_watch',
                 level: Union[int, str] = logging.INFO,
                 log_dir: Optional[str] = None) -> logging.Logger:
    """
    Configure and return the package logger.

    Modules log through ``logging.getLogger(__name__)``, so configuring the
    ``erosion_watch`` logger once covers the whole package.

    logger.debug("Tile 3/12 done")    # Only appears in log file
    logger.info("Composites built")   # Appears in both terminal and log file

    Args:
        name (str): Name of the logger. Defaults to 'erosion_watch'
        level: Console level, e.g. 'INFO' or logging.DEBUG
        log_dir (str): Optional directory for a rotating log file

    Returns:
        logging.Logger: Configured logger instance
    """
    logger = logging.getLogger(name)

    if not logger.handlers:
        logger.setLevel(logging.DEBUG)

        console_formatter = logging.Formatter(
            '%(asctime)s - %(levelname)s - %(message)s'
        )
        console_handler = logging.StreamHandler()
        console_handler.setLevel(level)
        console_handler.setFormatter(console_formatter)
        logger.addHandler(console_handler)

        if log_dir:
            os.makedirs(log_dir, exist_ok=True)
            file_formatter = logging.Formatter(
                '%(asctime)s - %(name)s - %(levelname)s - [%(filename)s:%(lineno)d] - %(message)s'
            )
            # Rotating file handler to manage log size
            file_handler = logging.handlers.RotatingFileHandler(
                os.path.join(log_dir, f'{name}.log'),
                maxBytes=10*1024*1024,  # 10MB
                backupCount=5
            )
            file_handler.setLevel(logging.DEBUG)
            file_handler.setFormatter(file_formatter)
            logger.addHandler(file_handler)

    return logger
