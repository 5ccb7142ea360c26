"""
Server Credential Generation
============================

Login, password, hostname and target OS chosen for a new server, derived
from the product the customer ordered.
"""

import random
import re
import secrets
import string

WINDOWS_OS = "Windows 2022 64"
LINUX_OS = "Ubuntu 22"

# Upstream panels reject most punctuation in passwords
SAFE_SPECIALS = "@#&$"
PASSWORD_LENGTH = 12

_WINDOWS_LIKE = re.compile(r"windows|rdp|vps", re.I)


def is_windows_product(product_name: str) -> bool:
    return bool(_WINDOWS_LIKE.search(product_name or ""))


def target_os_for(product_name: str) -> str:
    return WINDOWS_OS if is_windows_product(product_name) else LINUX_OS


def login_username_for(product_name: str) -> str:
    return "administrator" if is_windows_product(product_name) else "root"


def generate_password(length: int = PASSWORD_LENGTH) -> str:
    """Random password with at least one upper, lower, digit and safe special."""
    pools = [string.ascii_uppercase, string.ascii_lowercase, string.digits, SAFE_SPECIALS]
    chars = [secrets.choice(pool) for pool in pools]
    alphabet = "".join(pools)
    chars += [secrets.choice(alphabet) for _ in range(length - len(chars))]
    random.SystemRandom().shuffle(chars)
    return "".join(chars)


def generate_hostname(product_name: str, memory: str) -> str:
    """e.g. "windowsrdp-8gb-k3x9qa.com"."""
    clean_name = re.sub(r"[^a-z0-9]", "", (product_name or "").lower())
    memory_code = (memory or "").lower().replace("gb", "").strip()
    suffix = "".join(secrets.choice(string.ascii_lowercase + string.digits) for _ in range(6))
    return f"{clean_name}-{memory_code}gb-{suffix}.com"
