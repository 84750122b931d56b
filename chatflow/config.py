# Configuration settings
import os
from dotenv import load_dotenv

# Pick up a .env file next to the working directory, if any
load_dotenv()


class Config:
    """Runtime settings for the chat server and client.

    Every value can be overridden from the environment (or a .env file).
    """
    HOST = os.environ.get('CHATFLOW_HOST', '0.0.0.0')
    PORT = int(os.environ.get('CHATFLOW_PORT', 50051))

    DATA_DIR = os.environ.get('CHATFLOW_DATA_DIR', os.path.join('chatflow', 'data'))
    LOG_DIR = os.environ.get(
        'CHATFLOW_LOG_DIR',
        os.path.join(os.path.dirname(os.path.abspath(__file__)), 'logs'),
    )

    JWT_SECRET = os.environ.get('JWT_SECRET', 'dev-secret-change-me')
    JWT_ALGORITHM = 'HS256'
    JWT_EXPIRY_DAYS = int(os.environ.get('JWT_EXPIRY_DAYS', 30))

    # Shared secret of the trusted bridge that completes external (OAuth) sign-in.
    # External login is disabled while it is empty.
    EXTERNAL_AUTH_SECRET = os.environ.get('EXTERNAL_AUTH_SECRET', '')

    # Seconds a new stream may take to present its credential
    AUTH_TIMEOUT = float(os.environ.get('AUTH_TIMEOUT', 5.0))

    MAX_MESSAGE_LENGTH = int(os.environ.get('MAX_MESSAGE_LENGTH', 1000))
    MAX_FILE_SIZE = int(os.environ.get('MAX_FILE_SIZE', 10 * 1024 * 1024))
    MAX_GROUP_NAME_LENGTH = 50
    PAGE_SIZE = int(os.environ.get('PAGE_SIZE', 50))
    GROUP_REPLAY_LIMIT = int(os.environ.get('GROUP_REPLAY_LIMIT', 50))
    SEARCH_LIMIT = 20
