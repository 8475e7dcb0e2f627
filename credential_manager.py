# credential_manager.py
import json
import os

from durations import parse_duration

TRUE_VALUES = ('1', 'true', 'yes', 'on')


def _get_bool(name, default):
    value = os.getenv(name)
    if value is None or value == '':
        return default
    return value.strip().lower() in TRUE_VALUES


class CredentialManager:
    @staticmethod
    def get_db_credentials():
        required_vars = ['db_username', 'db_password']
        missing_vars = [var for var in required_vars if os.getenv(var) is None]
        if missing_vars:
            raise EnvironmentError(f"Missing required environment variables: {', '.join(missing_vars)}")
        return {
            'user': os.environ.get('db_username'),
            'password': os.environ.get('db_password'),
            'database': os.getenv('OAUTHDB', 'OAUTHDB'),
            'host': os.getenv('DB_HOST', 'localhost'),
            'port': int(os.getenv('DB_PORT', 5999))
        }

    @staticmethod
    def get_redis_settings():
        return {
            'url': os.getenv('REDIS_URL', 'redis://127.0.0.1:6379/0'),
            'key_prefix': os.getenv('REDIS_KEY_PREFIX', 'oauth'),
        }

    @staticmethod
    def get_repository_backend():
        backend = os.getenv('OAUTH_REPOSITORY', 'postgres').strip().lower()
        if backend not in ('postgres', 'redis'):
            raise EnvironmentError(f"Unsupported OAUTH_REPOSITORY '{backend}', expected 'postgres' or 'redis'")
        return backend

    @staticmethod
    def get_secret_key():
        secret_key = os.getenv('SECRET_KEY', 'reallysecretkey')
        if not secret_key:
            raise EnvironmentError("Missing required environment variable: SECRET_KEY")
        return secret_key

    @staticmethod
    def get_signing_key():
        """Key material from PRIVATE_KEY_PATH when set, otherwise SECRET_KEY."""
        private_key_path = os.getenv('PRIVATE_KEY_PATH')
        if private_key_path:
            try:
                with open(private_key_path, 'r') as key_file:
                    key = key_file.read().strip()
            except OSError as e:
                raise EnvironmentError(f"Cannot read private key at '{private_key_path}': {e}") from e
            if not key:
                raise EnvironmentError(f"Private key at '{private_key_path}' is empty")
            return key
        return CredentialManager.get_secret_key()

    @staticmethod
    def get_authentication_settings():
        return {
            'authenticate_url': os.getenv('AUTHENTICATE_URL', 'https://lidraughts.org/login?referrer={}'),
            'authenticate_cookie': os.getenv('AUTHENTICATE_COOKIE', 'lidraughts2'),
            'check_authentication_url': os.getenv('CHECK_AUTHENTICATION_URL', 'https://lidraughts.org/account/info'),
            'timeout': float(os.getenv('AUTHENTICATION_CHECK_TIMEOUT', 5)),
            'consent_template': os.getenv('CONSENT_TEMPLATE') or None,
        }

    @staticmethod
    def get_grant_settings():
        return {
            'auth_code': _get_bool('GRANT_ENABLED_AUTH_CODE', True),
            'client_credentials': _get_bool('GRANT_ENABLED_CLIENT_CREDENTIALS', False),
            'refresh_token': _get_bool('GRANT_ENABLED_REFRESH_TOKEN', True),
            'require_code_challenge_for_public_clients': _get_bool('REQUIRE_CODE_CHALLENGE_FOR_PUBLIC_CLIENTS', False),
        }

    @staticmethod
    def get_token_ttls():
        try:
            return {
                'access_token': parse_duration(os.getenv('TTL_ACCESS_TOKEN', 'P20Y')),
                'auth_code': parse_duration(os.getenv('TTL_AUTH_CODE', 'PT10M')),
                'refresh_token': parse_duration(os.getenv('TTL_REFRESH_TOKEN', 'P20Y')),
            }
        except ValueError as e:
            raise EnvironmentError(str(e)) from e

    @staticmethod
    def get_dependency_timeout():
        return float(os.getenv('DEPENDENCY_TIMEOUT', 10))

    @staticmethod
    def get_cors_origins():
        origins = os.getenv('CORS_ORIGINS', '')
        return [origin.strip() for origin in origins.split(',') if origin.strip()]

    @staticmethod
    def get_seed_clients():
        """Clients declared in OAUTH_CLIENTS_FILE, as a list of dicts."""
        clients_file = os.getenv('OAUTH_CLIENTS_FILE')
        if not clients_file:
            return []
        with open(clients_file, 'r') as f:
            clients = json.load(f)
        if not isinstance(clients, list):
            raise EnvironmentError(f"'{clients_file}' must contain a JSON list of clients")
        return clients
