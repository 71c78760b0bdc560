#!/usr/bin/env python3
"""
K9 Field Tracker Backend Server

Features:
- Live MQTT telemetry relayed to the browser as Server-Sent Events
- Operator authentication (JWT)
- Track sessions: start, finish with metrics, share codes, report numbers
- Track snapshots (image upload)
- Incident reports
- SQLite database storage
"""

import json
import uuid
import sqlite3
import hashlib
import jwt
import logging
from logging.handlers import RotatingFileHandler
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional
from contextlib import asynccontextmanager

from database_manager import DatabaseManager
from snapshot_storage import SnapshotStorage, SnapshotStorageError, parse_data_url
from stream_bridge import BridgeConfig, BridgeSession, SessionRegistry, StreamParams

from dotenv import load_dotenv
import os
import secrets

import paho.mqtt.client as mqtt
from fastapi import FastAPI, HTTPException, Depends, Query, status
from fastapi.responses import FileResponse, StreamingResponse
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, ConfigDict, EmailStr, Field
import uvicorn

# JWT Configuration
JWT_SECRET_ENV_VAR = 'JWT_SECRET'
JWT_ALGORITHM = "HS256"
JWT_EXPIRATION_HOURS = 24 * 7  # 7 days

BOOTSTRAP_OPERATOR_EMAIL_ENV_VAR = 'BOOTSTRAP_OPERATOR_EMAIL'
BOOTSTRAP_OPERATOR_PASSWORD_ENV_VAR = 'BOOTSTRAP_OPERATOR_PASSWORD'
DB_PATH_ENV_VAR = 'DB_PATH'
SNAPSHOT_DIR_ENV_VAR = 'SNAPSHOT_DIR'
SNAPSHOT_PUBLIC_BASE_URL_ENV_VAR = 'SNAPSHOT_PUBLIC_BASE_URL'
SERVER_HOST_ENV_VAR = 'SERVER_HOST'
SERVER_PORT_ENV_VAR = 'SERVER_PORT'

PROD_ENV_PATH = "prod.env"

LOG_DIR_PATH = 'logs'
LOG_FILE_PATH = f'{LOG_DIR_PATH}/k9_tracker_backend.log'

SSE_HEADERS = {
    "Content-Type": "text/event-stream",
    "Cache-Control": "no-cache, no-transform",
    "Connection": "keep-alive",
}


def create_and_configure_logger():
    os.makedirs(LOG_DIR_PATH, exist_ok=True)

    logger = logging.getLogger(__name__)
    logger.setLevel(logging.INFO)

    max_log_size_in_mb = 10
    file_handler = RotatingFileHandler(LOG_FILE_PATH, maxBytes=max_log_size_in_mb*1000000, backupCount=3)

    console_handler = logging.StreamHandler()
    console_handler.setLevel(logging.INFO)

    formatter = logging.Formatter('%(asctime)s: %(name)s (%(levelname)s) %(message)s')

    file_handler.setFormatter(formatter)
    console_handler.setFormatter(formatter)

    logger.addHandler(file_handler)
    logger.addHandler(console_handler)

    return logger

logger = create_and_configure_logger()

load_dotenv(dotenv_path=PROD_ENV_PATH)

JWT_SECRET = os.getenv(JWT_SECRET_ENV_VAR, "your-secret-key-change-in-production")

# Security
security = HTTPBearer()

# Database manager and snapshot storage will be initialized in startup event
db_manager = None
snapshot_storage = None

bridge_config = BridgeConfig.from_env()
stream_registry = SessionRegistry(logger)

TRACK_JSON_COLUMNS = ('weather', 'elevation', 'points')
TRACK_BOOL_COLUMNS = ('ssl', 'is_public')

# Pydantic Models for API
class SignInRequest(BaseModel):
    email: EmailStr
    password: str

class CreateTrackRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    device_id: Optional[str] = Field(None, alias='deviceId')
    topic: Optional[str] = None
    host: Optional[str] = None
    port: Optional[int] = None
    ssl: Optional[bool] = None
    started_at: Optional[datetime] = Field(None, alias='startedAt')

class FinishTrackRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    distance_m: Optional[float] = None
    duration_ms: Optional[int] = None
    pace_min_per_km: Optional[float] = None
    avg_speed_kmh: Optional[float] = None
    weather: Optional[Any] = None
    elevation: Optional[Any] = None
    points: Optional[List[Dict[str, Any]]] = None
    snapshot_data_url: Optional[str] = Field(None, alias='snapshotDataUrl')

class SnapshotUploadRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    data_url: str = Field('', alias='dataUrl')

class CreateReportRequest(BaseModel):
    handler: str
    dog: str
    email: Optional[EmailStr] = None
    track_id: Optional[str] = None
    notes: Optional[str] = None
    attachment_url: Optional[str] = None


# Authentication utilities
def hash_password(password: str) -> str:
    """Hash a password using SHA-256."""
    return hashlib.sha256(password.encode()).hexdigest()

def verify_password(password: str, password_hash: str) -> bool:
    """Verify a password against its hash."""
    return hash_password(password) == password_hash

def create_jwt_token(user_uuid: str) -> str:
    """Create a JWT token for an operator."""
    payload = {
        'user_uuid': user_uuid,
        'exp': datetime.now(timezone.utc) + timedelta(hours=JWT_EXPIRATION_HOURS)
    }
    return jwt.encode(payload, JWT_SECRET, algorithm=JWT_ALGORITHM)

def decode_jwt_token(token: str) -> Optional[str]:
    """Decode a JWT token and return the operator UUID."""
    try:
        payload = jwt.decode(token, JWT_SECRET, algorithms=[JWT_ALGORITHM])
        return payload.get('user_uuid')
    except jwt.ExpiredSignatureError:
        logger.warning("JWT token expired")
        return None
    except jwt.InvalidTokenError:
        logger.warning("Invalid JWT token")
        return None

async def get_current_user(credentials: HTTPAuthorizationCredentials = Depends(security)) -> str:
    """Get the current operator from JWT token."""
    user_uuid = decode_jwt_token(credentials.credentials)
    if not user_uuid:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired token",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return user_uuid

# Stream dependencies, overridable in tests
def get_bridge_config() -> BridgeConfig:
    return bridge_config

def get_mqtt_client_factory() -> Callable[..., mqtt.Client]:
    return mqtt.Client

# Generate UUID
def generate_uuid() -> str:
    return str(uuid.uuid4())

def generate_share_code() -> str:
    # 6 random bytes -> 8 url-safe characters
    return secrets.token_urlsafe(6)

def track_row_to_dict(cursor: sqlite3.Cursor, row: tuple) -> Dict[str, Any]:
    track = {column[0]: value for column, value in zip(cursor.description, row)}
    for column in TRACK_JSON_COLUMNS:
        if track.get(column) is not None:
            track[column] = json.loads(track[column])
    for column in TRACK_BOOL_COLUMNS:
        if track.get(column) is not None:
            track[column] = bool(track[column])
    return track

def dump_json(value: Any) -> Optional[str]:
    return None if value is None else json.dumps(value)

def create_bootstrap_operator():
    """Create bootstrap operator if no operator exists"""

    operator_email = os.getenv(BOOTSTRAP_OPERATOR_EMAIL_ENV_VAR)
    operator_password = os.getenv(BOOTSTRAP_OPERATOR_PASSWORD_ENV_VAR)
    if not operator_email or not operator_password:
        logger.warning(f"{BOOTSTRAP_OPERATOR_EMAIL_ENV_VAR} or {BOOTSTRAP_OPERATOR_PASSWORD_ENV_VAR} "
                       f"not defined in {PROD_ENV_PATH}, skipping operator bootstrap")
        return

    try:
        with db_manager.get_connection() as conn:
            cursor = conn.cursor()

            # Check if any operator already exists
            cursor.execute('SELECT uuid FROM users LIMIT 1')
            if cursor.fetchone():
                logger.info("Operator already exists. skipping bootstrap")
                return

            user_uuid = generate_uuid()
            password_hash = hash_password(operator_password)

            cursor.execute('''
                INSERT INTO users (uuid, email, password_hash, nickname)
                VALUES (?, ?, ?, ?)
            ''', (user_uuid, operator_email, password_hash, 'bootstrap_operator'))

            logger.info("Creating bootstrap operator")
            conn.commit()

    except Exception as e:
        logger.error(f"Error creating bootstrap operator: {e}")
        raise

def on_startup():
    global db_manager, snapshot_storage
    logger.info("K9 Tracker Backend starting up...")

    # Initialize database manager with current environment configuration
    db_path = os.getenv(DB_PATH_ENV_VAR, "k9_tracker.db")
    db_manager = DatabaseManager(logger, db_path)
    logger.info("Database initialized")

    snapshot_storage = SnapshotStorage(
        logger,
        os.getenv(SNAPSHOT_DIR_ENV_VAR, "snapshots"),
        os.getenv(SNAPSHOT_PUBLIC_BASE_URL_ENV_VAR, "/snapshots"),
    )
    logger.info(f"Snapshot storage ready at {snapshot_storage.root_dir}")

    try:
        create_bootstrap_operator()
    except Exception as e:
        logger.error(f"Failed to create bootstrap operator: {e}")
        exit(1)

    logger.info(f"MQTT stream bridge ready (default broker {bridge_config.default_host})")
    logger.info("Backend server ready!")

# Shutdown event
async def on_shutdown():
    logger.info("K9 Tracker Backend shutting down...")
    await stream_registry.shutdown()

@asynccontextmanager
async def lifespan(app: FastAPI):
    on_startup()
    yield
    await on_shutdown()

# FastAPI app
app = FastAPI(title="K9 Tracker Backend", version="1.0.0", lifespan=lifespan)

# Add CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # In production, specify actual origins
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Health check
@app.get("/health")
async def health_check():
    return {
        "status": "healthy",
        "timestamp": datetime.now().isoformat(),
        "table_accessible": db_manager.is_accessible(),
        "active_streams": len(stream_registry),
    }

# Authentication endpoints
@app.post("/signin")
async def sign_in(request: SignInRequest):
    """Sign in an operator."""
    try:
        with db_manager.get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute('''
                SELECT uuid, password_hash, nickname FROM users WHERE email = ?
            ''', (request.email,))

            user = cursor.fetchone()
            if not user or not verify_password(request.password, user[1]):
                raise HTTPException(status_code=401, detail="Invalid email or password")

            user_uuid, _, nickname = user

            # Update last seen
            cursor.execute('UPDATE users SET last_seen = ? WHERE uuid = ?',
                         (datetime.now().isoformat(), user_uuid))
            conn.commit()

            token = create_jwt_token(user_uuid)

            logger.info(f"Operator signed in: {request.email}")
            return {
                "token": token,
                "uuid": user_uuid,
                "email": request.email,
                "nickname": nickname
            }

    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"Sign in error: {e}")
        raise HTTPException(status_code=500, detail="Internal server error")

# Live telemetry stream
@app.get("/stream")
async def stream_telemetry(
    host: str = "",
    port: str = "",
    topic: str = "",
    ssl: str = "0",
    user: str = "",
    password: str = Query("", alias="pass"),
    insecure: str = "0",
    keepalive: str = "",
    client_id: str = Query("", alias="clientId"),
    config: BridgeConfig = Depends(get_bridge_config),
    client_factory: Callable[..., mqtt.Client] = Depends(get_mqtt_client_factory),
):
    """Relay an MQTT topic to the browser as Server-Sent Events.

    Every parameter is optional. Broker problems are reported in-band as
    diagnostic events, the response itself is always 200.
    """
    params = StreamParams.from_query(
        config,
        host=host,
        port=port,
        topic=topic,
        ssl=ssl,
        user=user,
        password=password,
        insecure=insecure,
        keepalive=keepalive,
        client_id=client_id,
    )
    session = BridgeSession(params, config, logger, client_factory)
    logger.info(f"Stream requested: {params.url} topic={params.topic}")
    return StreamingResponse(stream_registry.relay(session), headers=SSE_HEADERS)

# Track endpoints
@app.post("/tracks")
async def create_track(request: CreateTrackRequest, current_user: str = Depends(get_current_user)):
    """Start a new track."""
    try:
        with db_manager.get_connection() as conn:
            cursor = conn.cursor()

            track_id = generate_uuid()
            share_code = generate_share_code()
            started_at = (request.started_at or datetime.now(timezone.utc)).isoformat()

            cursor.execute('''
                INSERT INTO tracks (id, device_id, topic, host, port, ssl, share_code, is_public, started_at, created_by)
                VALUES (?, ?, ?, ?, ?, ?, ?, 1, ?, ?)
            ''', (track_id, request.device_id, request.topic, request.host, request.port,
                  None if request.ssl is None else int(request.ssl), share_code, started_at, current_user))

            conn.commit()

            logger.info(f"Track {track_id} started on topic {request.topic}")
            return {"id": track_id, "shareCode": share_code}

    except Exception as e:
        logger.error(f"Create track error: {e}")
        raise HTTPException(status_code=500, detail="Internal server error")

@app.get("/tracks/active")
async def get_active_track(code: Optional[str] = None, topic: Optional[str] = None):
    """Find the most recent unfinished track for a share code or topic."""
    if not code and not topic:
        raise HTTPException(status_code=400, detail="Provide share code or topic")

    try:
        with db_manager.get_connection() as conn:
            cursor = conn.cursor()

            query = 'SELECT id, started_at FROM tracks WHERE ended_at IS NULL'
            args = []
            if code:
                query += ' AND share_code = ?'
                args.append(code)
            if topic:
                query += ' AND topic = ?'
                args.append(topic)
            query += ' ORDER BY started_at DESC LIMIT 1'

            cursor.execute(query, args)
            row = cursor.fetchone()

            return {
                "active": row is not None,
                "id": row[0] if row else None,
                "startedAt": row[1] if row else None,
            }

    except Exception as e:
        logger.error(f"Get active track error: {e}")
        raise HTTPException(status_code=500, detail="Internal server error")

@app.get("/tracks/resolve")
async def resolve_report_no(report_no: Optional[str] = None):
    """Resolve a report number to a track id."""
    if not report_no:
        raise HTTPException(status_code=400, detail="Missing report_no")

    try:
        with db_manager.get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute('SELECT id FROM tracks WHERE report_no = ?', (report_no,))
            row = cursor.fetchone()
            if not row:
                raise HTTPException(status_code=404, detail="Not found")
            return {"id": row[0]}

    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"Resolve report number error: {e}")
        raise HTTPException(status_code=500, detail="Internal server error")

@app.get("/tracks/share/{share_code}")
async def get_shared_track(share_code: str):
    """Get the public, safe-to-share fields of a track."""
    try:
        with db_manager.get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute('''
                SELECT id, topic, host, port, ssl FROM tracks
                WHERE share_code = ? AND is_public = 1
            ''', (share_code,))
            row = cursor.fetchone()
            if not row:
                raise HTTPException(status_code=404, detail="Not found")

            return {
                "id": row[0],
                "topic": row[1],
                "host": row[2] or None,
                "port": row[3] or None,
                "ssl": None if row[4] is None else bool(row[4]),
            }

    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"Get shared track error: {e}")
        raise HTTPException(status_code=500, detail="Internal server error")

@app.get("/tracks/{track_id}")
async def get_track(track_id: str, current_user: str = Depends(get_current_user)):
    """Get a full track record."""
    try:
        with db_manager.get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute('SELECT * FROM tracks WHERE id = ?', (track_id,))
            row = cursor.fetchone()
            if not row:
                raise HTTPException(status_code=404, detail="Track not found")
            return track_row_to_dict(cursor, row)

    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"Get track error: {e}")
        raise HTTPException(status_code=500, detail="Internal server error")

@app.post("/tracks/{track_id}/finish")
async def finish_track(track_id: str, request: FinishTrackRequest, current_user: str = Depends(get_current_user)):
    """Finish a track: store the summary, an optional snapshot and mint a report number."""
    try:
        with db_manager.get_connection() as conn:
            cursor = conn.cursor()

            cursor.execute('SELECT report_no, snapshot_url FROM tracks WHERE id = ?', (track_id,))
            track = cursor.fetchone()
            if not track:
                raise HTTPException(status_code=404, detail="Track not found")

            report_no, snapshot_url = track

            # Snapshot is best-effort, the summary is saved without it on failure
            if request.snapshot_data_url:
                key = f"tracks/{track_id}_{int(datetime.now().timestamp() * 1000)}.png"
                snapshot_url = store_snapshot(key, request.snapshot_data_url, upsert=False) or snapshot_url

            if not report_no:
                report_no = db_manager.next_track_report_no()

            cursor.execute('''
                UPDATE tracks SET ended_at = ?, distance_m = ?, duration_ms = ?, pace_min_per_km = ?,
                    avg_speed_kmh = ?, weather = ?, elevation = ?, points = ?, snapshot_url = ?, report_no = ?
                WHERE id = ?
            ''', (
                datetime.now(timezone.utc).isoformat(),
                request.distance_m,
                request.duration_ms,
                request.pace_min_per_km,
                request.avg_speed_kmh,
                dump_json(request.weather),
                dump_json(request.elevation),
                dump_json(request.points),
                snapshot_url,
                report_no,
                track_id,
            ))

            conn.commit()

            logger.info(f"Track {track_id} finished as report {report_no}")
            return {"ok": True, "id": track_id, "report_no": report_no, "snapshot_url": snapshot_url}

    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"Finish track error: {e}")
        raise HTTPException(status_code=500, detail="Internal server error")

@app.post("/tracks/{track_id}/snapshot")
async def upload_track_snapshot(track_id: str, request: SnapshotUploadRequest, current_user: str = Depends(get_current_user)):
    """Upload a map snapshot for a track and attach its public URL."""
    if not request.data_url.startswith("data:image"):
        raise HTTPException(status_code=400, detail="Missing or invalid dataUrl")

    parsed = parse_data_url(request.data_url)
    if parsed is None or not parsed.data:
        raise HTTPException(status_code=400, detail="Missing or invalid dataUrl")

    try:
        with db_manager.get_connection() as conn:
            cursor = conn.cursor()

            cursor.execute('SELECT id FROM tracks WHERE id = ?', (track_id,))
            if not cursor.fetchone():
                raise HTTPException(status_code=404, detail="Track not found")

            url = snapshot_storage.upload(f"snapshots/{track_id}.png", parsed.data, parsed.content_type, upsert=True)

            cursor.execute('UPDATE tracks SET snapshot_url = ? WHERE id = ?', (url, track_id))
            conn.commit()

            return {"ok": True, "url": url}

    except HTTPException:
        raise
    except SnapshotStorageError as e:
        logger.error(f"Snapshot upload error: {e}")
        raise HTTPException(status_code=500, detail="Snapshot upload failed")
    except Exception as e:
        logger.error(f"Snapshot upload error: {e}")
        raise HTTPException(status_code=500, detail="Internal server error")

def store_snapshot(key: str, data_url: str, upsert: bool) -> Optional[str]:
    """Upload a snapshot data URL, returning its public URL or None if it could not be stored."""
    parsed = parse_data_url(data_url)
    if parsed is None or not parsed.data:
        logger.warning(f"Ignoring snapshot {key}: not a base64 data URL")
        return None
    try:
        return snapshot_storage.upload(key, parsed.data, parsed.content_type, upsert=upsert)
    except (SnapshotStorageError, OSError) as e:
        logger.warning(f"Snapshot upload failed for {key}: {e}")
        return None

@app.get("/snapshots/{key:path}")
async def get_snapshot(key: str):
    """Serve a stored snapshot."""
    try:
        path = snapshot_storage.resolve(key)
    except SnapshotStorageError:
        raise HTTPException(status_code=404, detail="Snapshot not found")
    if not os.path.isfile(path):
        raise HTTPException(status_code=404, detail="Snapshot not found")
    return FileResponse(path)

# Report endpoints
@app.post("/reports")
async def create_report(request: CreateReportRequest, current_user: str = Depends(get_current_user)):
    """Submit an incident report."""
    if not request.handler.strip() or not request.dog.strip():
        raise HTTPException(status_code=400, detail="handler and dog are required")

    try:
        with db_manager.get_connection() as conn:
            cursor = conn.cursor()

            if request.track_id:
                cursor.execute('SELECT id FROM tracks WHERE id = ?', (request.track_id,))
                if not cursor.fetchone():
                    raise HTTPException(status_code=404, detail="Track not found")

            report_id = generate_uuid()
            cursor.execute('''
                INSERT INTO reports (id, handler, dog, email, track_id, notes, attachment_url, created_by)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            ''', (report_id, request.handler, request.dog, request.email, request.track_id,
                  request.notes, request.attachment_url, current_user))

            conn.commit()

            logger.info(f"Report {report_id} submitted for dog {request.dog}")
            return {"ok": True, "id": report_id}

    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"Create report error: {e}")
        raise HTTPException(status_code=500, detail="Internal server error")


if __name__ == "__main__":
    # Server configuration
    host = os.getenv(SERVER_HOST_ENV_VAR, "0.0.0.0")
    port = int(os.getenv(SERVER_PORT_ENV_VAR, "8000"))

    # Run the server
    uvicorn.run(
        "main:app",
        host=host,
        port=port,
        reload=True,
        log_level="info",
    )
