"""
Cifrado de secretos del tenant (clave privada, passphrase, CSC).

AES-256-GCM: clave = SHA-256(clave maestra), IV aleatorio de 16 bytes,
tag de 16 bytes. Se guarda base64(iv + tag + ciphertext).
"""
import base64
import hashlib
import os

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

IV_LEN = 16
TAG_LEN = 16


def _derivar_clave(clave_maestra: str) -> bytes:
    if not clave_maestra:
        raise ValueError("Clave maestra de cifrado no configurada (SIFEN_ENCRYPTION_KEY)")
    return hashlib.sha256(clave_maestra.encode("utf-8")).digest()[:32]


def cifrar(texto: str, clave_maestra: str) -> str:
    iv = os.urandom(IV_LEN)
    # AESGCM devuelve ciphertext + tag
    sellado = AESGCM(_derivar_clave(clave_maestra)).encrypt(iv, texto.encode("utf-8"), None)
    ct, tag = sellado[:-TAG_LEN], sellado[-TAG_LEN:]
    return base64.b64encode(iv + tag + ct).decode("ascii")


def descifrar(token: str, clave_maestra: str) -> str:
    try:
        raw = base64.b64decode(token.encode("ascii"), validate=True)
    except ValueError as e:
        raise ValueError(f"Secreto cifrado con formato inválido: {e}") from e
    if len(raw) < IV_LEN + TAG_LEN:
        raise ValueError("Secreto cifrado truncado")
    iv, tag, ct = raw[:IV_LEN], raw[IV_LEN:IV_LEN + TAG_LEN], raw[IV_LEN + TAG_LEN:]
    try:
        plano = AESGCM(_derivar_clave(clave_maestra)).decrypt(iv, ct + tag, None)
    except InvalidTag as e:
        raise ValueError("No se pudo descifrar el secreto (clave maestra incorrecta o dato alterado)") from e
    return plano.decode("utf-8")
