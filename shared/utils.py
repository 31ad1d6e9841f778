from datetime import datetime, timedelta
from typing import Optional, Generic, TypeVar, Any
from fastapi import HTTPException, status, Header
from motor.motor_asyncio import AsyncIOMotorClient
from pydantic import BaseModel
from pydantic_settings import BaseSettings
from jose import JWTError, jwt
import uuid

# --- Configuration ---
class Settings(BaseSettings):
    MONGO_URL: str = "mongodb://mongodb:27017"
    MONGO_DB: str = "storefront_db"
    CART_BACKEND: str = "mongo"  # mongo | memory

    STORE_NAME: str = "Hafsa's Boutique"
    STORE_PHONE: str = "+254"
    STORE_PHONE_PLAIN: str = "254700000000"
    STORE_LOCATION: str = "Eastleigh"
    CHAT_SERVICE_URL: str = "https://wa.me"

    ADMIN_USERNAME: str = "admin"
    ADMIN_PASSWORD: str = "hafsa2025"
    SECRET_KEY: str = "secret"
    ALGORITHM: str = "HS256"
    ADMIN_SESSION_EXPIRE_MINUTES: int = 480

    ORDER_LOG_WEBHOOK_URL: Optional[str] = None
    ORDER_LOG_TIMEOUT: float = 5.0

    CLOUDINARY_CLOUD_NAME: Optional[str] = None
    CLOUDINARY_UPLOAD_PRESET: Optional[str] = None

    CHECKOUT_FLOW_TTL_SECONDS: int = 1800

    RATE_LIMIT_ENABLED: bool = True

    class Config:
        env_file = ".env"

settings = Settings()

# --- Database ---
def get_db_client(url: str = settings.MONGO_URL) -> AsyncIOMotorClient:
    return AsyncIOMotorClient(url)

# --- Admin Sessions ---
def create_session_token(data: dict, expires_delta: Optional[timedelta] = None) -> str:
    to_encode = data.copy()
    if expires_delta:
        expire = datetime.utcnow() + expires_delta
    else:
        expire = datetime.utcnow() + timedelta(minutes=settings.ADMIN_SESSION_EXPIRE_MINUTES)

    # Add JTI
    if "jti" not in to_encode:
        to_encode.update({"jti": str(uuid.uuid4())})

    to_encode.update({"exp": expire})
    encoded_jwt = jwt.encode(to_encode, settings.SECRET_KEY, algorithm=settings.ALGORITHM)
    return encoded_jwt

def verify_token(token: str) -> dict:
    try:
        payload = jwt.decode(token, settings.SECRET_KEY, algorithms=[settings.ALGORITHM])
        return payload
    except JWTError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Could not validate credentials",
            headers={"WWW-Authenticate": "Bearer"},
        )

# --- Response Models ---
T = TypeVar("T")

class SuccessResponse(BaseModel, Generic[T]):
    success: bool = True
    data: Optional[T] = None
    message: Optional[str] = None

class ErrorResponse(BaseModel):
    success: bool = False
    error: str
    details: Optional[Any] = None

class HealthResponse(BaseModel):
    service: str
    status: str
    timestamp: datetime
    version: str
    database: Optional[str] = None
    dependencies: Optional[dict] = None


# --- Exceptions ---
class AppException(HTTPException):
    def __init__(
        self,
        status_code: int = status.HTTP_400_BAD_REQUEST,
        detail: Any = "An error occurred",
        headers: Optional[dict] = None
    ):
        super().__init__(status_code=status_code, detail=detail, headers=headers)

class NotFoundException(AppException):
    def __init__(self, detail: str = "Resource not found"):
        super().__init__(status_code=status.HTTP_404_NOT_FOUND, detail=detail)

class UnauthorizedException(AppException):
    def __init__(self, detail: str = "Unauthorized"):
         super().__init__(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=detail,
            headers={"WWW-Authenticate": "Bearer"}
        )

class ConflictException(AppException):
    def __init__(self, detail: str = "Conflict"):
        super().__init__(status_code=status.HTTP_409_CONFLICT, detail=detail)

class ConfigurationError(AppException):
    """A collaborator needed by this action is not configured."""
    def __init__(self, detail: str = "Service not configured"):
        super().__init__(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=detail)

class UpstreamServiceError(AppException):
    """A remote collaborator answered with a non-success status."""
    def __init__(self, detail: str = "Upstream service failed"):
        super().__init__(status_code=status.HTTP_502_BAD_GATEWAY, detail=detail)

# --- Decorators/Dependencies ---
async def require_auth(authorization: Optional[str] = Header(None)) -> dict:
    scheme, _, param = (authorization or "").partition(" ")
    if not authorization or scheme.lower() != "bearer":
         raise UnauthorizedException(detail="Invalid authentication credentials")
    return verify_token(param)
