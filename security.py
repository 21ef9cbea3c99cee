"""Funciones de seguridad: hashing de contraseñas y generación de tokens de sesión.

Se utiliza bcrypt vía passlib para almacenar contraseñas; los tokens de sesión
son opacos (256 bits de secrets), no JWT, porque deben poder revocarse.
"""

import secrets
from passlib.context import CryptContext
from config import MIN_BCRYPT_ROUNDS

# Hash fijo contra el que se verifica cuando la identidad no existe, para que
# "usuario inexistente" y "contraseña incorrecta" cuesten lo mismo.
_DUMMY_PASSWORD = 'not-a-real-password'


class PasswordHasher:
    """Envuelve un CryptContext de bcrypt con un factor de trabajo mínimo de 12."""
    def __init__(self, rounds: int = MIN_BCRYPT_ROUNDS):
        self.rounds = max(rounds, MIN_BCRYPT_ROUNDS)
        self.context = CryptContext(schemes=["bcrypt"], deprecated="auto", bcrypt__rounds=self.rounds)
        self._dummy_hash = None

    # hash: Genera hash bcrypt de una contraseña en texto plano.
    def hash(self, password: str) -> str:
        # Truncar password a 72 bytes para compatibilidad bcrypt
        password_bytes = password.encode('utf-8')[:72]
        return self.context.hash(password_bytes.decode('utf-8', errors='ignore'))

    # verify: Verifica en tiempo constante si la contraseña coincide con el hash.
    def verify(self, password: str, password_hash: str) -> bool:
        password_bytes = password.encode('utf-8')[:72]
        try:
            return self.context.verify(password_bytes.decode('utf-8', errors='ignore'), password_hash)
        except (ValueError, TypeError):
            return False

    # dummy_verify: Consume el mismo tiempo que una verificación real y siempre falla.
    def dummy_verify(self, password: str) -> bool:
        if self._dummy_hash is None:
            self._dummy_hash = self.hash(_DUMMY_PASSWORD)
        self.verify(password, self._dummy_hash)
        return False

    # needs_rehash: Indica si el hash se generó con un costo distinto al actual.
    def needs_rehash(self, password_hash: str) -> bool:
        try:
            return self.context.needs_update(password_hash)
        except (ValueError, TypeError):
            return False


# new_session_token: Token opaco url-safe con 256 bits de entropía.
def new_session_token() -> str:
    return secrets.token_urlsafe(32)
