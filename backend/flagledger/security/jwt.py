from datetime import datetime, timedelta, timezone

from jose import jwt

from flagledger.config.settings import Settings, settings as default_settings


def create_access_token(
    user_id: str,
    email: str | None = None,
    name: str | None = None,
    role: str = 'competitor',
    settings: Settings = default_settings,
) -> str:
    exp = datetime.now(timezone.utc) + timedelta(minutes=settings.jwt_access_expiry_minutes)
    claims = {'sub': user_id, 'type': 'access', 'role': role, 'exp': exp}
    if email:
        claims['email'] = email
    if name:
        claims['name'] = name
    return jwt.encode(claims, settings.jwt_secret, settings.jwt_algorithm)


def decode_token(token: str, settings: Settings = default_settings) -> dict:
    return jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
