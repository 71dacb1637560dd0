"""
Генерация Reality ключей и конфигурации Xray для нового сервера.

Ключи x25519 генерируются локально (cryptography), без вызова
`xray x25519` — на управляющей машине Xray не установлен.
"""

import base64
import json
import logging
import secrets
import uuid
from dataclasses import dataclass
from typing import Optional

from cryptography.hazmat.primitives.asymmetric.x25519 import X25519PrivateKey
from cryptography.hazmat.primitives.serialization import Encoding, PrivateFormat, PublicFormat, NoEncryption

logger = logging.getLogger(__name__)

DEFAULT_FLOW = "xtls-rprx-vision"


@dataclass(frozen=True)
class RealityKeys:
    """Пара ключей Reality + short id"""
    private_key: str
    public_key: str
    short_id: str


def _b64(raw: bytes) -> str:
    # Xray использует base64url без паддинга
    return base64.urlsafe_b64encode(raw).decode().rstrip("=")


def generate_reality_keys() -> RealityKeys:
    """Сгенерировать x25519 ключи и short id (8 байт hex)"""
    private = X25519PrivateKey.generate()
    private_raw = private.private_bytes(Encoding.Raw, PrivateFormat.Raw, NoEncryption())
    public_raw = private.public_key().public_bytes(Encoding.Raw, PublicFormat.Raw)

    keys = RealityKeys(
        private_key=_b64(private_raw),
        public_key=_b64(public_raw),
        short_id=secrets.token_hex(8),
    )
    logger.info("Ключи Reality успешно сгенерированы.")
    return keys


def build_xray_config(
    domain: str,
    keys: RealityKeys,
    initial_user_email: Optional[str] = None,
    reality_dest: str = "www.google.com:443",
    port: int = 443,
) -> tuple[dict, str]:
    """
    Базовая конфигурация Xray (VLESS + TCP + XTLS-Reality).

    Returns:
        (config, initial_user_id)
    """
    initial_user_id = str(uuid.uuid4())
    email = initial_user_email or f"user-{initial_user_id[:8]}@{domain}"
    server_name = reality_dest.split(":")[0]

    config = {
        "log": {
            "loglevel": "warning",
            "access": "/var/log/xray/access.log",
            "error": "/var/log/xray/error.log",
        },
        "inbounds": [
            {
                "listen": "0.0.0.0",
                "port": port,
                "protocol": "vless",
                "settings": {
                    "clients": [
                        {"id": initial_user_id, "email": email, "flow": DEFAULT_FLOW},
                    ],
                    "decryption": "none",
                },
                "streamSettings": {
                    "network": "tcp",
                    "security": "reality",
                    "realitySettings": {
                        "show": False,
                        "dest": reality_dest,
                        "xver": 0,
                        "serverNames": [server_name],
                        "privateKey": keys.private_key,
                        "shortIds": [keys.short_id],
                    },
                },
                "sniffing": {"enabled": True, "destOverride": ["http", "tls"]},
            }
        ],
        "outbounds": [
            {"protocol": "freedom", "tag": "direct"},
            {"protocol": "blackhole", "tag": "block"},
        ],
    }
    return config, initial_user_id


def render_config(config: dict) -> str:
    return json.dumps(config, indent=2, ensure_ascii=False)
