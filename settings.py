import os

from dotenv import load_dotenv

load_dotenv()

# ----------------------
# Auth
# ----------------------
JWT_SECRET = os.getenv("JWT_SECRET", "dev-secret-change-me")
JWT_ALG = os.getenv("JWT_ALG", "HS256")
TOKEN_EXP_MINUTES = int(os.getenv("TOKEN_EXP_MINUTES", "120"))

# ----------------------
# Database
# ----------------------
DATABASE_URL = os.getenv("DATABASE_URL")
DATABASE_NAME = os.getenv("DATABASE_NAME")

# ----------------------
# Attendance policy
# ----------------------
# Joining is lenient, continuous presence and submission are strict.
JOIN_RADIUS_METERS = float(os.getenv("JOIN_RADIUS_METERS", "5000"))
CHECK_RADIUS_METERS = float(os.getenv("CHECK_RADIUS_METERS", "200"))

CHECK_BUDGET = int(os.getenv("CHECK_BUDGET", "7"))
MIN_REQUIRED = int(os.getenv("MIN_REQUIRED_CHECKS", "4"))

PASSCODE_TTL_SECONDS = int(os.getenv("PASSCODE_TTL_SECONDS", "10"))
DEFAULT_DURATION_MINUTES = int(os.getenv("DEFAULT_DURATION_MINUTES", "60"))

# ----------------------
# Server
# ----------------------
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
CORS_ORIGINS = [o.strip() for o in os.getenv("CORS_ORIGINS", "*").split(",") if o.strip()]
PORT = int(os.getenv("PORT", "8000"))
