
import sqlite3
import logging
from datetime import datetime
from typing import Optional

# Database Manager
class DatabaseManager:
    def __init__(self, logger: logging.Logger, db_path: str = "k9_tracker.db"):
        self.logger = logger
        self.db_path = db_path
        self._connection = sqlite3.connect(db_path, check_same_thread=False)
        self.init_database()

    def init_database(self):
        """Initialize the database with all required tables."""
        with self._connection:
            cursor = self._connection.cursor()

            # Operators table
            cursor.execute('''
                CREATE TABLE IF NOT EXISTS users (
                    uuid TEXT PRIMARY KEY,
                    email TEXT UNIQUE NOT NULL,
                    password_hash TEXT NOT NULL,
                    nickname TEXT NOT NULL,
                    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                    last_seen TIMESTAMP
                )
            ''')

            # Tracks table
            cursor.execute('''
                CREATE TABLE IF NOT EXISTS tracks (
                    id TEXT PRIMARY KEY,
                    device_id TEXT,
                    topic TEXT,
                    host TEXT,
                    port INTEGER,
                    ssl INTEGER,
                    share_code TEXT UNIQUE NOT NULL,
                    is_public INTEGER NOT NULL DEFAULT 1,
                    started_at TIMESTAMP NOT NULL,
                    ended_at TIMESTAMP,
                    distance_m REAL,
                    duration_ms INTEGER,
                    pace_min_per_km REAL,
                    avg_speed_kmh REAL,
                    weather TEXT,
                    elevation TEXT,
                    points TEXT,
                    snapshot_url TEXT,
                    report_no TEXT UNIQUE,
                    created_by TEXT,
                    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                    FOREIGN KEY (created_by) REFERENCES users (uuid)
                )
            ''')

            # Incident reports table
            cursor.execute('''
                CREATE TABLE IF NOT EXISTS reports (
                    id TEXT PRIMARY KEY,
                    handler TEXT NOT NULL,
                    dog TEXT NOT NULL,
                    email TEXT,
                    track_id TEXT,
                    notes TEXT,
                    attachment_url TEXT,
                    created_by TEXT,
                    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                    FOREIGN KEY (track_id) REFERENCES tracks (id),
                    FOREIGN KEY (created_by) REFERENCES users (uuid)
                )
            ''')

            self._connection.commit()
            self.logger.info("Database initialized successfully")

    def get_connection(self):
        """Get a database connection."""
        return self._connection

    def next_track_report_no(self, now: Optional[datetime] = None) -> str:
        """Mint the next report number for the month, e.g. 2025-03-07."""
        prefix = (now or datetime.now()).strftime('%Y-%m')
        cursor = self._connection.cursor()
        cursor.execute('SELECT COUNT(*) FROM tracks WHERE report_no LIKE ?', (f'{prefix}-%',))
        count = cursor.fetchone()[0]
        return f'{prefix}-{count + 1:02d}'

    def is_accessible(self) -> bool:
        """Check that the tracks table can be queried."""
        try:
            self._connection.execute('SELECT COUNT(*) FROM tracks').fetchone()
            return True
        except sqlite3.Error as e:
            self.logger.error(f"Tracks table not accessible: {e}")
            return False
