"""
Configuration et utilitaires partagés - JustTry CRM
"""

import os
import hashlib
import secrets
import time
from datetime import datetime, timezone
from motor.motor_asyncio import AsyncIOMotorClient
from dotenv import load_dotenv
from pathlib import Path

# Charger .env
ROOT_DIR = Path(__file__).parent
load_dotenv(ROOT_DIR / '.env')


def _env_flag(name: str, default: bool = False) -> bool:
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


# MongoDB
MONGO_URL = os.environ.get('MONGO_URL', 'mongodb://localhost:27017')
DB_NAME = os.environ.get('DB_NAME', 'justtry_crm')

client = AsyncIOMotorClient(MONGO_URL)
db = client[DB_NAME]

CORS_ORIGINS = os.environ.get('CORS_ORIGINS', '*').split(',')
APP_URL = os.environ.get('APP_URL', 'http://localhost:3000')

# Sessions
SESSION_DAYS = int(os.environ.get('SESSION_DAYS', '7'))

# Workflow
COLLABORATOR_TIMEOUT_SECONDS = float(os.environ.get('COLLABORATOR_TIMEOUT_SECONDS', '30'))
STRICT_PIPELINE_TRANSITIONS = _env_flag('STRICT_PIPELINE_TRANSITIONS')

# AI voice calls
BLAND_AI_API_KEY = os.environ.get('BLAND_AI_API_KEY', '')

# AI email content
OPENROUTER_API_KEY = os.environ.get('OPENROUTER_API_KEY', '')
OPENROUTER_MODEL = os.environ.get('OPENROUTER_MODEL', 'anthropic/claude-3-haiku')

# Email delivery
SENDGRID_API_KEY = os.environ.get('SENDGRID_API_KEY', '')
SENDER_EMAIL = os.environ.get('SENDER_EMAIL', 'crm@justtry.com')
SENDER_NAME = os.environ.get('SENDER_NAME', 'JustTry CRM')

# Payouts (mock gateway when keys are missing)
RAZORPAY_KEY_ID = os.environ.get('RAZORPAY_KEY_ID', '')
RAZORPAY_KEY_SECRET = os.environ.get('RAZORPAY_KEY_SECRET', '')
RAZORPAY_ACCOUNT_NUMBER = os.environ.get('RAZORPAY_ACCOUNT_NUMBER', '')

# Credit bureau
CREDIT_BUREAU_URL = os.environ.get('CREDIT_BUREAU_URL', '')
CREDIT_BUREAU_API_KEY = os.environ.get('CREDIT_BUREAU_API_KEY', '')

# Lead documents
DOCUMENTS_DIR = Path(os.environ.get('DOCUMENTS_DIR', str(ROOT_DIR / 'static' / 'documents')))


# ==================== HELPERS ====================

def hash_password(password: str) -> str:
    """Hash un mot de passe avec SHA256"""
    return hashlib.sha256(password.encode()).hexdigest()

def generate_token() -> str:
    """Génère un token de session sécurisé"""
    return secrets.token_urlsafe(32)

def now_iso() -> str:
    """Retourne la date/heure actuelle en ISO"""
    return datetime.now(timezone.utc).isoformat()

def timestamp_ms() -> int:
    return int(time.time() * 1000)

def generate_lead_id() -> str:
    """Identifiant lead basé sur l'horloge: LEAD-<millis>-<hex>"""
    return f"LEAD-{timestamp_ms()}-{secrets.token_hex(2)}"

def generate_disbursement_id() -> str:
    return f"disb-{timestamp_ms()}-{secrets.token_hex(2)}"

def generate_user_id() -> str:
    return f"USR-{secrets.token_hex(6)}"

def mask_account_number(account_number: str) -> str:
    """Ne garde que les 4 derniers chiffres pour les logs"""
    if not account_number:
        return ""
    return "*" * max(len(account_number) - 4, 0) + account_number[-4:]
