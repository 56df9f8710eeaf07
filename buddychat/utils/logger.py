import logging
import os

def setup_logger(name='buddychat'):
    """Set up a logger with console and file output.

    Creates a logger that writes:
    - INFO and above to console
    - DEBUG and above to file (<log dir>/server.log)

    The log directory defaults to ``buddychat/logs`` and can be moved with
    the ``BUDDYCHAT_LOG_DIR`` environment variable. Handlers are attached
    only the first time a given name is set up.

    Args:
        name (str, optional): Logger name. Defaults to 'buddychat'

    Returns:
        logging.Logger: Configured logger instance

    Side Effects:
        - Creates logs directory if it doesn't exist
        - Creates/appends to server.log file
    """
    logger = logging.getLogger(name)
    if logger.handlers:
        return logger
    logger.setLevel(logging.DEBUG)

    # Create formatters and handlers
    formatter = logging.Formatter('%(asctime)s - %(levelname)s - %(name)s - %(message)s')

    # Console handler
    console_handler = logging.StreamHandler()
    console_handler.setFormatter(formatter)
    console_handler.setLevel(logging.INFO)
    logger.addHandler(console_handler)

    # File handler - ensure log directory exists
    log_dir = os.environ.get('BUDDYCHAT_LOG_DIR') or os.path.join(os.path.dirname(os.path.dirname(__file__)), 'logs')
    try:
        os.makedirs(log_dir, exist_ok=True)
        file_handler = logging.FileHandler(os.path.join(log_dir, 'server.log'))
    except OSError as e:
        logger.warning(f"File logging disabled, cannot open {log_dir}: {e}")
    else:
        file_handler.setFormatter(formatter)
        file_handler.setLevel(logging.DEBUG)
        logger.addHandler(file_handler)

    return logger
