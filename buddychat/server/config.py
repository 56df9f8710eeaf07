"""Server configuration.

Defaults can be overridden through ``BUDDYCHAT_*`` environment variables,
and the server CLI overrides both.
"""
import os
from dataclasses import dataclass

DEFAULT_HOST = "127.0.0.1"
DEFAULT_PORT = 50051
DEFAULT_DATA_DIR = "buddychat/data"
DEFAULT_HISTORY_LIMIT = 50


@dataclass
class ServerConfig:
    """Server configuration.

    Attributes:
        host (str): Interface to bind
        port (int): Port to listen on
        data_dir (str): Directory holding users.jsonl and groups.jsonl
        history_limit (int): Messages replayed to a session when it joins
            a room; 0 replays the whole history
    """
    host: str = DEFAULT_HOST
    port: int = DEFAULT_PORT
    data_dir: str = DEFAULT_DATA_DIR
    history_limit: int = DEFAULT_HISTORY_LIMIT

    @property
    def listen_addr(self) -> str:
        return f"{self.host}:{self.port}"

    @property
    def users_path(self) -> str:
        return os.path.join(self.data_dir, "users.jsonl")

    @property
    def groups_path(self) -> str:
        return os.path.join(self.data_dir, "groups.jsonl")

    @classmethod
    def from_env(cls, environ=None) -> "ServerConfig":
        env = os.environ if environ is None else environ
        return cls(
            host=env.get("BUDDYCHAT_HOST", DEFAULT_HOST),
            port=int(env.get("BUDDYCHAT_PORT", DEFAULT_PORT)),
            data_dir=env.get("BUDDYCHAT_DATA_DIR", DEFAULT_DATA_DIR),
            history_limit=int(env.get("BUDDYCHAT_HISTORY_LIMIT", DEFAULT_HISTORY_LIMIT)),
        )
