"""Gate.io APIv4 签名（纯函数）。

REST: SIGN = HMAC-SHA512(secret, "METHOD\\nPATH\\nQUERY\\nSHA512(BODY)\\nTIMESTAMP")
WS:   SIGN = HMAC-SHA512(secret, "channel=<ch>&event=<ev>&time=<t>")
"""

import hashlib
import hmac
import time
from typing import Dict, Optional


def _hmac_sha512(secret: str, message: str) -> str:
    return hmac.new(secret.encode("utf-8"), message.encode("utf-8"), hashlib.sha512).hexdigest()


def sign_request(
    secret: str,
    method: str,
    path: str,
    query: str = "",
    body: str = "",
    *,
    now: Optional[float] = None,
) -> Dict[str, str]:
    """
    REST 请求签名

    Returns:
        {'SIGN': ..., 'Timestamp': ...}，调用方再补上 KEY 头
    """
    t = str(int(now if now is not None else time.time()))
    hashed_body = hashlib.sha512((body or "").encode("utf-8")).hexdigest()
    payload = "\n".join([method.upper(), path, query or "", hashed_body, t])
    return {"SIGN": _hmac_sha512(secret, payload), "Timestamp": t}


def sign_ws_auth(
    api_key: str,
    secret: str,
    channel: str,
    event: str = "subscribe",
    ts: Optional[int] = None,
) -> Dict:
    """Auth block attached to a private-channel subscribe message."""
    t = int(ts if ts is not None else time.time())
    message = f"channel={channel}&event={event}&time={t}"
    return {"method": "api_key", "KEY": api_key, "SIGN": _hmac_sha512(secret, message)}
