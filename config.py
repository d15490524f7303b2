"""
Конфигурация сервиса Donation Assets.
✔️ Автоматическая загрузка .env
✔️ Open Cloud key + .ROBLOSECURITY cookie (всегда отправляем оба, если есть)
"""
import os
from typing import Dict, List, Tuple
from dotenv import load_dotenv
load_dotenv(override=False)

def _env_bool(name: str, default: bool=False) -> bool:
    v = os.getenv(name)
    if v is None:
        return default
    return v.strip().lower() in ('1', 'true', 'yes', 'y', 'on')

def _env_int(name: str, default: int) -> int:
    try:
        return int(os.getenv(name, str(default)))
    except Exception:
        return default

def _env_float(name: str, default: float) -> float:
    try:
        return float(os.getenv(name, str(default)))
    except Exception:
        return default

def normalize_roblox_cookie(raw) -> str:
    """Env UIs love to wrap values in quotes and break lines; accept token-only too."""
    if not isinstance(raw, str):
        return ''
    s = raw.strip()
    if len(s) >= 2 and ((s.startswith('"') and s.endswith('"')) or (s.startswith("'") and s.endswith("'"))):
        s = s[1:-1].strip()
    s = ''.join(s.split())
    if s and 'ROBLOSECURITY=' not in s:
        s = f'.ROBLOSECURITY={s}'
    return s

class _CFG(object):
    ROBLOX_OPEN_CLOUD_KEY: str = (os.getenv('ROBLOX_OPEN_CLOUD_KEY') or '').strip()
    ROBLOX_SECURITY_COOKIE: str = normalize_roblox_cookie(os.getenv('ROBLOX_SECURITY_COOKIE'))
    DEBUG_LOG_ALL: bool = _env_bool('DEBUG_LOG_ALL', False)
    GATEWAY_URL: str = (os.getenv('ROBLOX_GATEWAY_URL') or '').strip()
    UPSTREAM_TIMEOUT: float = _env_float('UPSTREAM_TIMEOUT', 15.0)
    MAX_ATTEMPTS: int = _env_int('UPSTREAM_MAX_ATTEMPTS', 4)
    RETRY_BASE_DELAY_MS: int = _env_int('RETRY_BASE_DELAY_MS', 600)
    RETRY_MAX_DELAY_MS: int = _env_int('RETRY_MAX_DELAY_MS', 8000)
    UPSTREAM_DELAY_MIN_MS: int = _env_int('UPSTREAM_DELAY_MIN_MS', 200)
    UPSTREAM_DELAY_MAX_MS: int = _env_int('UPSTREAM_DELAY_MAX_MS', 300)
    LOG_PATH: str = os.getenv('LOG_PATH', 'donation_assets.log')
    HOST: str = os.getenv('HOST', '0.0.0.0')
    PORT: int = _env_int('PORT', 8000)
CFG = _CFG()

# Only the hosts each endpoint actually calls
AGGREGATOR_HOSTS: Tuple[str, ...] = ('apis.roblox.com', 'catalog.roblox.com', 'games.roblox.com')
GAMEPASS_HOSTS: Tuple[str, ...] = ('apis.roblox.com', 'games.roblox.com')
GATEWAY_HOSTS: Tuple[str, ...] = ('games.roblox.com', 'apis.roblox.com', 'users.roblox.com', 'thumbnails.roblox.com', 'catalog.roblox.com', 'inventory.roblox.com')

DEFAULTS: Dict[str, object] = {'includeGamepasses': True, 'includeClothing': True, 'maxPlaces': 50, 'maxUniversePages': 10, 'maxInventoryPages': 10, 'pageSize': 100, 'concurrency': 5, 'catalogBatchSize': 50}

GAMEPASS_TYPE_ID = 34
INVENTORY_ASSET_TYPES: List[str] = ['CLASSIC_TSHIRT', 'CLASSIC_SHIRT', 'CLASSIC_PANTS']
ASSET_LIST_KEYS: List[str] = ['GAMEPASS'] + INVENTORY_ASSET_TYPES
ASSET_TYPE_IDS: Dict[str, int] = {'GAMEPASS': GAMEPASS_TYPE_ID, 'CLASSIC_TSHIRT': 2, 'CLASSIC_SHIRT': 11, 'CLASSIC_PANTS': 12}

BASE_HEADERS: Dict[str, str] = {'Accept': 'application/json', 'User-Agent': 'Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36', 'Referer': 'https://www.roblox.com/'}

def auth_headers(api_key: str = None, cookie: str = None) -> Dict[str, str]:
    """Base headers plus whatever credentials are configured."""
    api_key = CFG.ROBLOX_OPEN_CLOUD_KEY if api_key is None else api_key
    cookie = CFG.ROBLOX_SECURITY_COOKIE if cookie is None else normalize_roblox_cookie(cookie)
    headers = dict(BASE_HEADERS)
    if api_key and api_key.strip():
        headers['x-api-key'] = api_key
    if cookie and cookie.strip():
        headers['cookie'] = cookie
    return headers
