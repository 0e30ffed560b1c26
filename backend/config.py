import os

DATABASE_URL = os.environ.get("DATABASE_URL", "mongodb://localhost:27017")
DATABASE_NAME = os.environ.get("DATABASE_NAME", "quiz_app")

SECRET_KEY = os.environ.get("SECRET_KEY", "supersecretkey")  # in real deployment, set via env
ALGORITHM = "HS256"
ACCESS_TOKEN_EXPIRE_MINUTES = int(os.environ.get("ACCESS_TOKEN_EXPIRE_MINUTES", 60 * 8))

CORS_ORIGINS = [o.strip() for o in os.environ.get("CORS_ORIGINS", "*").split(",") if o.strip()]

LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")
LOG_FORMAT = os.environ.get("LOG_FORMAT", "text")  # "text" | "json"

# Used when a quiz document carries no timeLimit (minutes)
DEFAULT_TIME_LIMIT_MINUTES = int(os.environ.get("DEFAULT_TIME_LIMIT_MINUTES", 30))

SEED_ADMIN = os.environ.get("SEED_ADMIN", "1").lower() in ("1", "true", "yes")
ADMIN_EMAIL = os.environ.get("ADMIN_EMAIL", "admin@university.edu")
ADMIN_PASSWORD = os.environ.get("ADMIN_PASSWORD", "admin123")
