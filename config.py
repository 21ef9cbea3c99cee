"""Módulo de configuración del núcleo de acceso y entrega de contactos.

Proporciona lectura de variables de entorno (y de un .env local) para la base de
datos, las sesiones de compradores y administradores, la pasarela de pago y el
reconciliador de checkouts abiertos.
"""

import os
from pathlib import Path
from functools import lru_cache
from dotenv import load_dotenv

# Piso del factor de trabajo de bcrypt; valores menores se elevan a este.
MIN_BCRYPT_ROUNDS = 12


# _env_bool: Interpreta una variable de entorno como booleano ("1", "true", "yes", "on").
def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or raw.strip() == '':
        return default
    return raw.strip().lower() in ('1', 'true', 'yes', 'on')


# get_settings: Devuelve (cacheado) la instancia única de Settings.
@lru_cache
def get_settings():
    return Settings()


class Settings:
    """Agrupa todos los parámetros de configuración usados en la aplicación.

    Se inicializa leyendo variables de entorno. Los tests pueden pasar
    overrides por nombre de atributo, p.ej. Settings(database_url='sqlite://').
    """
    def __init__(self, **overrides):
        base_dir = Path(__file__).resolve().parent
        load_dotenv(base_dir / '.env')

        default_db_path = base_dir / 'market.db'
        self.database_url = os.getenv('MARKET_DB_URL', f"sqlite:///{default_db_path}")

        # Sesiones: compradores con ventana deslizante en días, admins con reloj fijo en horas.
        self.buyer_session_ttl_days = int(os.getenv('BUYER_SESSION_TTL_DAYS', '7'))
        self.admin_session_ttl_hours = int(os.getenv('ADMIN_SESSION_TTL_HOURS', '8'))
        self.admin_bind_ip = _env_bool('ADMIN_SESSION_BIND_IP', True)

        # Credenciales
        self.bcrypt_rounds = int(os.getenv('BCRYPT_ROUNDS', str(MIN_BCRYPT_ROUNDS)))
        self.min_password_length = int(os.getenv('MIN_PASSWORD_LENGTH', '8'))

        # Pasarela de pago (API compatible con checkout sessions de Stripe).
        self.gateway_url = os.getenv('PAYMENT_GATEWAY_URL', 'https://api.stripe.com')
        self.gateway_secret_key = os.getenv('PAYMENT_GATEWAY_SECRET', '')
        self.currency = os.getenv('PAYMENT_CURRENCY', 'usd').lower()
        self.success_url = os.getenv(
            'CHECKOUT_SUCCESS_URL',
            'http://localhost:5173/payment-success?ref={CHECKOUT_SESSION_ID}',
        )
        self.cancel_url = os.getenv('CHECKOUT_CANCEL_URL', 'http://localhost:5173/cart')

        # Parámetros de red
        self.request_timeout = float(os.getenv('REQUEST_TIMEOUT', '5'))
        self.max_retries = int(os.getenv('REQUEST_RETRIES', '2'))

        # Reconciliación de checkouts abiertos (0 desactiva el worker).
        self.reconcile_interval = int(os.getenv('RECONCILE_INTERVAL_SEC', '60'))
        self.reconcile_min_age_minutes = int(os.getenv('RECONCILE_MIN_AGE_MIN', '2'))
        self.checkout_ttl_hours = int(os.getenv('CHECKOUT_TTL_HOURS', '24'))

        # Super admin inicial (solo se siembra si la tabla de admins está vacía).
        self.superadmin_username = os.getenv('SUPERADMIN_USERNAME', '')
        self.superadmin_email = os.getenv('SUPERADMIN_EMAIL', '')
        self.superadmin_password = os.getenv('SUPERADMIN_PASSWORD', '')

        self.cookie_secure = (os.getenv('ENVIRONMENT') or '').strip().lower() == 'production'
        self.log_level = os.getenv('LOG_LEVEL', 'INFO').upper()
        self.log_json = _env_bool('LOG_JSON', True)

        for key, value in overrides.items():
            if not hasattr(self, key):
                raise AttributeError(f"Unknown setting: {key}")
            setattr(self, key, value)

        if self.bcrypt_rounds < MIN_BCRYPT_ROUNDS:
            self.bcrypt_rounds = MIN_BCRYPT_ROUNDS

    @property
    def buyer_session_ttl_seconds(self) -> int:
        return self.buyer_session_ttl_days * 24 * 60 * 60

    @property
    def admin_session_ttl_seconds(self) -> int:
        return self.admin_session_ttl_hours * 60 * 60
