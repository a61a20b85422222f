"""
MongoDB connection for the Storefront API

connect_db() is called once at startup. A missing DB_URL raises ConfigError,
and any failure to reach the server ends the process with exit status 1.
Handlers receive the database through the get_db() dependency.
"""

import sys
from typing import Any, Dict, Optional

from bson import ObjectId
from bson.errors import InvalidId
from fastapi import HTTPException
from loguru import logger
from pymongo import MongoClient
from pymongo.database import Database

from config import Settings, get_settings

client: Optional[MongoClient] = None
db: Optional[Database] = None


def connect_db(settings: Optional[Settings] = None) -> Database:
    global client, db
    settings = settings or get_settings()
    url = settings.require("db_url")

    try:
        client = MongoClient(url, serverSelectionTimeoutMS=5000)
        client.admin.command("ping")
        db = client.get_database(settings.db_name)
    except Exception as e:
        logger.error("MongoDB connection error: {}", e)
        sys.exit(1)

    host, port = client.address or ("unknown", None)
    logger.info("Connected to MongoDB: {}", f"{host}:{port}" if port else host)
    return db


def close_db() -> None:
    global client, db
    if client is not None:
        client.close()
    client = None
    db = None


def get_db() -> Database:
    if db is None:
        raise HTTPException(status_code=503, detail="Database not connected")
    return db


# Helpers

def to_obj_id(id_str: str) -> ObjectId:
    try:
        return ObjectId(id_str)
    except (InvalidId, TypeError):
        raise HTTPException(status_code=400, detail="Invalid id")


def sanitize(doc: Dict[str, Any]) -> Dict[str, Any]:
    if not doc:
        return doc
    d = {**doc}
    if "_id" in d:
        d["id"] = str(d.pop("_id"))
    d.pop("password_hash", None)
    return d
