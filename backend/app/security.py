from passlib.context import CryptContext

# bcrypt ignores everything past the first 72 bytes of a secret.
MAX_PASSWORD_BYTES = 72

_pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")


class PasswordTooLong(ValueError):
    pass


def hash_password(password: str) -> str:
    if len(password.encode("utf-8")) > MAX_PASSWORD_BYTES:
        raise PasswordTooLong(f"password must be at most {MAX_PASSWORD_BYTES} bytes")
    return _pwd_context.hash(password)
