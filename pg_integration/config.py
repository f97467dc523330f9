"""
Runtime Settings

Settings come from environment variables, optionally seeded from a ``.env``
file through python-dotenv.
"""

import os
from dataclasses import dataclass
from typing import Optional

from dotenv import load_dotenv


@dataclass(frozen=True)
class Settings:
    job_queue_capacity: int = 1000
    job_enqueue_timeout: float = 5.0
    job_store_backend: str = 'memory'
    job_store_mongo_uri: str = 'mongodb://localhost:27017'
    job_store_database: str = 'integration'
    job_store_collection: str = 'jobs'
    job_retention_days: int = 30
    log_level: str = 'INFO'


def load_settings(env_file: Optional[str] = None) -> Settings:
    """
    Load settings from the environment.

    Args:
        env_file: Optional path to a .env file; by default python-dotenv
            searches upward from the working directory. Variables already set
            in the environment win.

    Returns:
        Settings instance
    """
    load_dotenv(env_file)

    backend = os.environ.get('JOB_STORE_BACKEND', 'memory').strip().lower()
    if backend not in ('memory', 'mongo'):
        raise ValueError(f"JOB_STORE_BACKEND must be 'memory' or 'mongo', got '{backend}'")

    capacity = int(os.environ.get('JOB_QUEUE_CAPACITY', '1000'))
    if capacity <= 0:
        raise ValueError(f"JOB_QUEUE_CAPACITY must be positive, got {capacity}")

    return Settings(
        job_queue_capacity=capacity,
        job_enqueue_timeout=float(os.environ.get('JOB_ENQUEUE_TIMEOUT', '5')),
        job_store_backend=backend,
        job_store_mongo_uri=os.environ.get('JOB_STORE_MONGO_URI', 'mongodb://localhost:27017'),
        job_store_database=os.environ.get('JOB_STORE_DATABASE', 'integration'),
        job_store_collection=os.environ.get('JOB_STORE_COLLECTION', 'jobs'),
        job_retention_days=int(os.environ.get('JOB_RETENTION_DAYS', '30')),
        log_level=os.environ.get('LOG_LEVEL', 'INFO'),
    )
