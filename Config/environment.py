"""
Environment detection and .env file loading.

A single .env at the project root serves desktop runs; containers get their
variables from the orchestrator and may additionally mount /app/.env.
Loading is explicit: call env.load() before reading configuration.
"""
import os
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv


class Environment:
    """Detect and configure environment."""

    def __init__(self):
        self.is_docker = self._detect_docker()
        self.env_name = "prod" if self.is_docker else "dev"
        self.env_file = self._find_env_file()
        self._loaded = False

    def _detect_docker(self) -> bool:
        """Detect if running in Docker container."""
        if os.path.exists('/.dockerenv'):
            return True
        if os.getenv('IN_DOCKER', '').lower() == 'true':
            return True
        try:
            with open('/proc/1/cgroup', 'r') as f:
                return 'docker' in f.read()
        except OSError:
            return False

    def _find_env_file(self) -> Optional[Path]:
        """Find the .env file for the current environment."""
        if self.is_docker:
            env_path = Path('/app/.env')
        else:
            # Config/ -> project root
            env_path = Path(__file__).parents[1] / '.env'

        return env_path if env_path.exists() else None

    def load(self, force_reload: bool = False) -> bool:
        """
        Load environment variables from the .env file.

        Already-exported variables win over file values (override=False).

        Returns:
            True if a file was read on this call
        """
        if self._loaded and not force_reload:
            return False

        self._loaded = True
        if not self.env_file:
            return False

        return load_dotenv(self.env_file, override=False)

    @property
    def log_dir(self) -> Path:
        """Default log directory for the current environment."""
        configured = os.getenv('LOG_DIR')
        if configured:
            return Path(configured)
        if self.is_docker:
            return Path('/app/logs')
        return Path(__file__).parents[1] / 'logs'

    @property
    def wants_json_logs(self) -> bool:
        """JSON log lines in containers, or whenever LOG_FORMAT=json."""
        fmt = os.getenv('LOG_FORMAT', '').lower()
        if fmt:
            return fmt == 'json'
        return self.is_docker

    def __repr__(self) -> str:
        return f"Environment(env={self.env_name}, docker={self.is_docker}, file={self.env_file})"


env = Environment()

is_docker = env.is_docker
env_name = env.env_name
