import json
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

from dotenv import dotenv_values


class ConfigError(Exception):
    """Configuration error."""
    pass


def _env_int(env: Mapping[str, str], name: str, default: int) -> int:
    raw = env.get(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise ConfigError(f"{name} must be an integer, got {raw!r}")


def _env_float(env: Mapping[str, str], name: str, default: float) -> float:
    raw = env.get(name)
    if raw is None or raw == "":
        return default
    try:
        return float(raw)
    except ValueError:
        raise ConfigError(f"{name} must be a number, got {raw!r}")


@dataclass(frozen=True)
class StudioSettings:
    """Runtime knobs read from the environment (after ``load_dotenv``)."""

    write_batch_size: int = 100
    match_batch_size: int = 20
    search_limit: int = 5
    market: Optional[str] = None
    request_timeout: float = 15.0
    lastfm_api_key: Optional[str] = None
    lastfm_user_agent: str = "SpotifyPlaylistStudio/1.0"
    lastfm_import_enabled: bool = False
    api_base_url: str = "http://127.0.0.1:8080"

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None) -> "StudioSettings":
        env = os.environ if env is None else env
        write_batch = _env_int(env, "STUDIO_WRITE_BATCH_SIZE", 100)
        match_batch = _env_int(env, "STUDIO_MATCH_BATCH_SIZE", 20)
        if write_batch < 1 or match_batch < 1:
            raise ConfigError("Batch sizes must be positive")
        return cls(
            # The catalog accepts at most 100 URIs per write
            write_batch_size=min(write_batch, 100),
            match_batch_size=match_batch,
            search_limit=max(1, min(_env_int(env, "STUDIO_SEARCH_LIMIT", 5), 10)),
            market=env.get("STUDIO_MARKET") or None,
            request_timeout=_env_float(env, "STUDIO_REQUEST_TIMEOUT", 15.0),
            lastfm_api_key=env.get("LASTFM_API_KEY") or None,
            lastfm_user_agent=env.get("LASTFM_USER_AGENT") or "SpotifyPlaylistStudio/1.0",
            lastfm_import_enabled=env.get("LASTFM_IMPORT_ENABLED") == "true",
            api_base_url=env.get("STUDIO_API_URL") or "http://127.0.0.1:8080",
        )

    @property
    def lastfm_available(self) -> bool:
        return self.lastfm_import_enabled and bool(self.lastfm_api_key)


class SecretManager:
    """Manages application secrets and configuration."""

    def __init__(self, config_dir: Optional[str] = None):
        self.config_dir = Path(config_dir) if config_dir else Path.home() / '.playlist-studio'
        self.config_dir.mkdir(parents=True, exist_ok=True)

        self.tokens_file = self.config_dir / 'tokens.json'
        self.env_file = self.config_dir / '.env'

    def get_spotify_scopes(self) -> list:
        """Get minimal required Spotify scopes."""
        return [
            'playlist-read-private',      # Read private playlists
            'playlist-modify-public',     # Modify public playlists
            'playlist-modify-private',    # Modify private playlists
        ]

    def get_spotify_scope_string(self) -> str:
        return ' '.join(self.get_spotify_scopes())

    def load_tokens(self) -> Dict[str, Any]:
        """Load tokens from tokens.json file."""
        if not self.tokens_file.exists():
            return {}

        try:
            with open(self.tokens_file, 'r') as f:
                return json.load(f)
        except (json.JSONDecodeError, IOError) as e:
            raise ConfigError(f"Failed to load tokens from {self.tokens_file}: {e}")

    def save_tokens(self, tokens: Dict[str, Any]) -> None:
        """Merge tokens into tokens.json."""
        existing_tokens = self.load_tokens()
        existing_tokens.update(tokens)
        try:
            with open(self.tokens_file, 'w') as f:
                json.dump(existing_tokens, f, indent=2, ensure_ascii=False)
        except IOError as e:
            raise ConfigError(f"Failed to save tokens to {self.tokens_file}: {e}")

    def get_spotify_tokens(self) -> Optional[Dict[str, str]]:
        return self.load_tokens().get('spotify')

    def save_spotify_tokens(self, access_token: str, refresh_token: Optional[str] = None) -> None:
        tokens = {'access_token': access_token}
        if refresh_token:
            tokens['refresh_token'] = refresh_token
        else:
            previous = self.get_spotify_tokens() or {}
            if previous.get('refresh_token'):
                tokens['refresh_token'] = previous['refresh_token']
        self.save_tokens({'spotify': tokens})

    def load_env_vars(self) -> Dict[str, str]:
        """Load variables from the config directory's .env file."""
        if not self.env_file.exists():
            return {}
        return {k: v for k, v in dotenv_values(self.env_file).items() if v is not None}

    def _lookup(self, name: str) -> Optional[str]:
        return os.environ.get(name) or self.load_env_vars().get(name)

    def get_spotify_client_config(self) -> Dict[str, str]:
        """Client credentials used to refresh Spotify access tokens."""
        client_id = self._lookup('SPOTIFY_CLIENT_ID')
        client_secret = self._lookup('SPOTIFY_CLIENT_SECRET')
        if not client_id:
            raise ConfigError("SPOTIFY_CLIENT_ID not found in environment")
        if not client_secret:
            raise ConfigError("SPOTIFY_CLIENT_SECRET not found in environment")
        return {
            'client_id': client_id,
            'client_secret': client_secret,
            'redirect_uri': self._lookup('SPOTIFY_REDIRECT_URI') or 'http://127.0.0.1:8888/callback',
        }

    def get_spotify_access_token(self) -> Optional[str]:
        token = self._lookup('SPOTIFY_ACCESS_TOKEN')
        if token:
            return token
        return (self.get_spotify_tokens() or {}).get('access_token')

    def get_spotify_refresh_token(self) -> Optional[str]:
        token = self._lookup('SPOTIFY_REFRESH_TOKEN')
        if token:
            return token
        return (self.get_spotify_tokens() or {}).get('refresh_token')


_secret_manager: Optional[SecretManager] = None


def get_secret_manager() -> SecretManager:
    """Get the process-wide secret manager, creating it on first use."""
    global _secret_manager
    if _secret_manager is None:
        _secret_manager = SecretManager(os.environ.get('STUDIO_CONFIG_DIR'))
    return _secret_manager

