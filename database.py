import json
import logging
import os
import threading
from abc import ABC, abstractmethod
from typing import List, Optional

from pymongo import MongoClient
from pymongo.errors import PyMongoError
from dotenv import load_dotenv

from schemas import HistoryEntry, PredictionRecord

load_dotenv()

logger = logging.getLogger(__name__)

STORAGE_BACKEND = os.getenv("STORAGE_BACKEND", "json").strip().lower()
PREDICTIONS_FILE = os.getenv("PREDICTIONS_FILE", "data/predictions.json")
DATABASE_URL = os.getenv("DATABASE_URL")
DATABASE_NAME = os.getenv("DATABASE_NAME", "predictions")
COLLECTION_NAME = "predictions"


class StorageError(Exception):
    pass


class PredictionStore(ABC):
    """Append-only store of prediction records."""

    backend = "unknown"

    @abstractmethod
    def append(self, record: PredictionRecord) -> None:
        ...

    @abstractmethod
    def list_all(self) -> List[HistoryEntry]:
        ...


def _to_document(record: PredictionRecord) -> dict:
    return record.model_dump(mode="json", by_alias=True)


class MongoPredictionStore(PredictionStore):
    backend = "mongo"

    def __init__(self, collection):
        self.collection = collection

    @classmethod
    def from_url(cls, url: str, name: str = DATABASE_NAME) -> "MongoPredictionStore":
        client = MongoClient(url)
        return cls(client[name][COLLECTION_NAME])

    def append(self, record: PredictionRecord) -> None:
        doc = _to_document(record)
        doc["_id"] = record.id
        try:
            self.collection.insert_one(doc)
        except PyMongoError as e:
            logger.error("Error saving prediction %s to MongoDB: %s", record.id, e)
            raise StorageError("Failed to save prediction.") from e
        logger.info("Prediction %s saved to MongoDB", record.id)

    def list_all(self) -> List[HistoryEntry]:
        try:
            docs = list(self.collection.find())
        except PyMongoError as e:
            logger.error("Error fetching histories from MongoDB: %s", e)
            raise StorageError("Failed to fetch predictions.") from e

        entries = []
        for doc in docs:
            doc_id = str(doc.pop("_id", ""))
            try:
                record = PredictionRecord.model_validate(doc)
            except ValueError as e:
                logger.error("Invalid prediction document %s in MongoDB: %s", doc_id, e)
                raise StorageError("Failed to fetch predictions.") from e
            entries.append(HistoryEntry(id=doc_id, history=record))
        return entries


class JsonFilePredictionStore(PredictionStore):
    """Keeps every record in one JSON object keyed by id, in insertion order."""

    backend = "json"

    def __init__(self, path: str = PREDICTIONS_FILE):
        self.path = path
        self._lock = threading.Lock()

    def _read(self) -> dict:
        if not os.path.exists(self.path):
            return {}
        with open(self.path, "r", encoding="utf-8") as f:
            data = json.load(f)
        if not isinstance(data, dict):
            raise ValueError(f"{self.path} does not hold a JSON object")
        return data

    def _write(self, data: dict) -> None:
        directory = os.path.dirname(self.path)
        if directory:
            os.makedirs(directory, exist_ok=True)
        tmp_path = f"{self.path}.tmp"
        with open(tmp_path, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2)
        os.replace(tmp_path, self.path)

    def append(self, record: PredictionRecord) -> None:
        with self._lock:
            try:
                data = self._read()
                data[record.id] = _to_document(record)
                self._write(data)
            except (OSError, ValueError) as e:
                logger.error("Error saving prediction %s to %s: %s", record.id, self.path, e)
                raise StorageError("Failed to save prediction.") from e
        logger.info("Prediction %s saved to %s", record.id, self.path)

    def list_all(self) -> List[HistoryEntry]:
        with self._lock:
            try:
                data = self._read()
                # pydantic's ValidationError is a ValueError
                return [
                    HistoryEntry(id=record_id, history=PredictionRecord.model_validate(doc))
                    for record_id, doc in data.items()
                ]
            except (OSError, ValueError) as e:
                logger.error("Error reading histories from %s: %s", self.path, e)
                raise StorageError("Failed to fetch predictions.") from e


def get_store(backend: Optional[str] = None) -> PredictionStore:
    """Build the store named by ``STORAGE_BACKEND``."""
    backend = (backend or STORAGE_BACKEND).strip().lower()
    if backend == "mongo":
        if not DATABASE_URL:
            raise StorageError("DATABASE_URL must be set when STORAGE_BACKEND=mongo")
        return MongoPredictionStore.from_url(DATABASE_URL, DATABASE_NAME)
    if backend == "json":
        return JsonFilePredictionStore(PREDICTIONS_FILE)
    raise StorageError(f"Unknown storage backend: {backend}")
