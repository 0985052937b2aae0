import os

# ----------------------
# Auth
# ----------------------
JWT_SECRET = os.getenv("JWT_SECRET", "dev-secret-change-me")
JWT_ALG = os.getenv("JWT_ALG", "HS256")

# ----------------------
# Attendance protocol
# ----------------------
SELFIE_DISTANCE_THRESHOLD_METERS = float(os.getenv("SELFIE_DISTANCE_THRESHOLD_METERS", "5.0"))
LAST_LOCATION_MAX_AGE_SECONDS = int(os.getenv("LAST_LOCATION_MAX_AGE_SECONDS", "30"))
DEFAULT_EXPIRY_MINUTES = int(os.getenv("DEFAULT_EXPIRY_MINUTES", "15"))
SESSION_SWEEP_INTERVAL_SECONDS = int(os.getenv("SESSION_SWEEP_INTERVAL_SECONDS", "60"))
EVENT_QUEUE_SIZE = int(os.getenv("EVENT_QUEUE_SIZE", "256"))

# ----------------------
# Photo storage
# ----------------------
S3_BUCKET = os.getenv("S3_BUCKET")
S3_PREFIX = os.getenv("S3_PREFIX", "attendance-selfies/")
S3_BASE_URL = os.getenv("S3_BASE_URL")
UPLOAD_DIR = os.getenv("UPLOAD_DIR", "uploads")

# ----------------------
# Database / runtime
# ----------------------
DATABASE_URL = os.getenv("DATABASE_URL")
DATABASE_NAME = os.getenv("DATABASE_NAME")
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
PORT = int(os.getenv("PORT", 8000))
