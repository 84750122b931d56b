import logging
import os

from ..config import Config


def setup_logger(name='chatflow'):
    """Set up a logger with console and file output.

    Creates a logger that writes:
    - INFO and above to console
    - DEBUG and above to file (<LOG_DIR>/server.log)

    Calling it twice with the same name returns the already configured
    logger instead of stacking another pair of handlers.

    Args:
        name (str, optional): Logger name. Defaults to 'chatflow'

    Returns:
        logging.Logger: Configured logger instance

    Side Effects:
        - Creates the log directory if it doesn't exist
        - Creates/appends to server.log file
    """
    logger = logging.getLogger(name)
    if logger.handlers:
        return logger
    logger.setLevel(logging.DEBUG)

    formatter = logging.Formatter('%(asctime)s - %(levelname)s - %(name)s - %(message)s')

    # Console handler
    console_handler = logging.StreamHandler()
    console_handler.setFormatter(formatter)
    console_handler.setLevel(logging.INFO)

    # File handler - ensure log directory exists
    os.makedirs(Config.LOG_DIR, exist_ok=True)
    file_handler = logging.FileHandler(os.path.join(Config.LOG_DIR, 'server.log'), encoding='utf-8')
    file_handler.setFormatter(formatter)
    file_handler.setLevel(logging.DEBUG)

    logger.addHandler(console_handler)
    logger.addHandler(file_handler)
    # chatflow.* loggers are configured individually
    logger.propagate = False

    return logger
