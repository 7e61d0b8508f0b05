"""
=============================================================================
AUTH.PY — Sistema de Autenticación
=============================================================================
Gestiona:
  - Hashing de contraseñas (nunca guardar contraseñas en texto plano)
  - Creación y verificación de tokens JWT
  - Registro y login (con username o email)
  - Obtener el usuario actual desde un token

Flujo:
  1. El usuario se registra o hace login
  2. El servidor devuelve un JWT
  3. El cliente manda "Authorization: Bearer <token>" en cada petición
  4. get_current_user() verifica el token e inyecta el usuario
"""

import logging
import os
from datetime import timedelta
from typing import Optional

import bcrypt
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from jose import JWTError, jwt
from sqlalchemy.orm import Session

import gamification
import storage
from database import get_db, utcnow
from models import User
from schemas import UserLogin, UserRegister

logger = logging.getLogger("questline.auth")

# ─────────────────────────────────────────────────────────────────────────────
# CONFIGURACIÓN
# ─────────────────────────────────────────────────────────────────────────────

SECRET_KEY = os.getenv("SECRET_KEY", "questline-dev-secret-key-cambiar-en-produccion")
# SECRET_KEY → clave para firmar los JWT. En producción, una larga y aleatoria.

ALGORITHM = "HS256"

ACCESS_TOKEN_EXPIRE_DAYS = int(os.getenv("ACCESS_TOKEN_EXPIRE_DAYS", "30"))

STARTING_XPASS = 100

# ─────────────────────────────────────────────────────────────────────────────
# HASHING DE CONTRASEÑAS
# ─────────────────────────────────────────────────────────────────────────────
# bcrypt es IRREVERSIBLE: no se puede obtener la contraseña desde el hash.


def hash_password(password: str) -> str:
    """Convierte una contraseña en texto plano a un hash seguro"""
    return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def verify_password(plain_password: str, hashed_password: str) -> bool:
    """Compara una contraseña en texto plano con un hash almacenado"""
    return bcrypt.checkpw(plain_password.encode("utf-8"), hashed_password.encode("utf-8"))


# ─────────────────────────────────────────────────────────────────────────────
# TOKENS JWT
# ─────────────────────────────────────────────────────────────────────────────

def create_access_token(user_id: int, username: str) -> str:
    """
    El token contiene:
      - sub: el ID del usuario
      - username: para referencia
      - exp: cuándo caduca
    """
    expire = utcnow() + timedelta(days=ACCESS_TOKEN_EXPIRE_DAYS)
    to_encode = {
        "sub": str(user_id),
        "username": username,
        "exp": expire,
    }
    return jwt.encode(to_encode, SECRET_KEY, algorithm=ALGORITHM)


def decode_token(token: str) -> Optional[dict]:
    """Datos del token, o None si es inválido o ha expirado"""
    try:
        return jwt.decode(token, SECRET_KEY, algorithms=[ALGORITHM])
    except JWTError:
        return None


# ─────────────────────────────────────────────────────────────────────────────
# REGISTRO Y LOGIN
# ─────────────────────────────────────────────────────────────────────────────

def register_user(db: Session, data: UserRegister) -> User:
    """Crea la cuenta con nivel 1, 0 XP y 100 XPass de regalo"""
    if storage.get_user_by_login(db, data.username) or storage.get_user_by_login(db, data.email):
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="Ya existe una cuenta con ese username o email",
        )

    now = utcnow()
    user = storage.create_user(
        db,
        username=data.username.strip(),
        email=data.email.lower(),
        password_hash=hash_password(data.password),
        display_name=data.display_name.strip(),
        level=1,
        xp=0,
        xpass=STARTING_XPASS,
        title=gamification.get_level_title(1),
        streak=0,
        is_locked=False,
        last_login_date=now,
        created_at=now,
    )
    db.commit()
    db.refresh(user)
    logger.info(f"👤 Nuevo usuario registrado: {user.username} ({user.email})")
    return user


def authenticate(db: Session, data: UserLogin) -> User:
    """Login con username o email. Actualiza last_login_date."""
    user = storage.get_user_by_login(db, data.username)
    if not user or not verify_password(data.password, user.password_hash):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Usuario o contraseña incorrectos",
        )
    if user.is_locked:
        # Los tokens ya emitidos siguen valiendo para poder elegir castigo
        logger.info(f"🔒 Login rechazado para {user.username}: cuenta bloqueada")
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Tu cuenta está bloqueada. Resuelve tus misiones fallidas para desbloquearla.",
        )

    user.last_login_date = utcnow()
    db.commit()
    db.refresh(user)
    return user


# ─────────────────────────────────────────────────────────────────────────────
# DEPENDENCIA: OBTENER USUARIO ACTUAL
# ─────────────────────────────────────────────────────────────────────────────
# Si el token es válido → devuelve el usuario. Si no → 401.

security = HTTPBearer()
# HTTPBearer → busca el token en el header "Authorization: Bearer <token>"


async def get_current_user(
    credentials: HTTPAuthorizationCredentials = Depends(security),
    db: Session = Depends(get_db),
) -> User:
    payload = decode_token(credentials.credentials)
    if payload is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Token inválido o expirado",
            headers={"WWW-Authenticate": "Bearer"},
        )

    user_id = payload.get("sub")
    if user_id is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Token sin identificador de usuario",
        )

    user = db.get(User, int(user_id))
    if user is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Usuario no encontrado",
        )
    return user
