import logging
from typing import Dict, Iterable, List, Optional

from bson import ObjectId
from pymongo import DESCENDING, ReturnDocument
from pymongo.errors import DuplicateKeyError, PyMongoError

from catalog import ConflictError, UnexpectedError


class MongoEntityStore:
    """Storage collaborator for one entity collection.

    PyMongo failures are translated into the catalog error taxonomy so the
    routes never see driver exceptions: duplicate keys become
    ``ConflictError`` and everything else becomes ``UnexpectedError``.
    """

    def __init__(
        self, collection, label: str, slug_field: Optional[str] = "slug", logger=None
    ):
        self.collection = collection
        self.label = label
        self.slug_field = slug_field
        self.logger = logger or logging.getLogger(__name__)

    @property
    def name(self) -> str:
        return self.collection.name

    def ensure_indexes(self):
        try:
            if self.slug_field:
                self.collection.create_index(self.slug_field, unique=True)
            self.collection.create_index([("created_at", DESCENDING)])
        except Exception as exc:
            self.logger.warning(
                "Unable to ensure indexes for %s: %s", self.name, exc
            )

    def find_by_id(self, object_id: ObjectId) -> Optional[Dict]:
        try:
            return self.collection.find_one({"_id": object_id})
        except PyMongoError as exc:
            raise UnexpectedError(f"find_by_id on {self.name} failed") from exc

    def find_by_slug(self, slug: str) -> Optional[Dict]:
        if not self.slug_field:
            return None
        try:
            return self.collection.find_one({self.slug_field: slug})
        except PyMongoError as exc:
            raise UnexpectedError(f"find_by_slug on {self.name} failed") from exc

    def insert(self, document: Dict) -> Dict:
        try:
            result = self.collection.insert_one(document)
        except DuplicateKeyError as exc:
            raise ConflictError(self._duplicate_message()) from exc
        except PyMongoError as exc:
            raise UnexpectedError(f"insert on {self.name} failed") from exc
        document["_id"] = result.inserted_id
        return document

    def update_by_id(self, object_id: ObjectId, changes: Dict) -> Optional[Dict]:
        try:
            return self.collection.find_one_and_update(
                {"_id": object_id},
                {"$set": changes},
                return_document=ReturnDocument.AFTER,
            )
        except DuplicateKeyError as exc:
            raise ConflictError(self._duplicate_message()) from exc
        except PyMongoError as exc:
            raise UnexpectedError(f"update on {self.name} failed") from exc

    def delete_by_id(self, object_id: ObjectId) -> bool:
        try:
            result = self.collection.delete_one({"_id": object_id})
        except PyMongoError as exc:
            raise UnexpectedError(f"delete on {self.name} failed") from exc
        return result.deleted_count > 0

    def find_by_ids(self, object_ids: Iterable[ObjectId]) -> Dict[ObjectId, Dict]:
        unique_ids = list(dict.fromkeys(object_ids))
        if not unique_ids:
            return {}
        try:
            documents = self.collection.find({"_id": {"$in": unique_ids}})
            return {document["_id"]: document for document in documents}
        except PyMongoError as exc:
            raise UnexpectedError(f"find_by_ids on {self.name} failed") from exc

    def list(self, query: Optional[Dict] = None, limit: int = 0) -> List[Dict]:
        try:
            cursor = self.collection.find(query or {}).sort("created_at", DESCENDING)
            if limit:
                cursor = cursor.limit(limit)
            return list(cursor)
        except PyMongoError as exc:
            raise UnexpectedError(f"list on {self.name} failed") from exc

    def count(self, query: Optional[Dict] = None) -> int:
        try:
            return self.collection.count_documents(query or {})
        except PyMongoError as exc:
            raise UnexpectedError(f"count on {self.name} failed") from exc

    def count_by(self, field: str) -> Dict:
        counts: Dict = {}
        pipeline = [
            {"$match": {field: {"$exists": True, "$ne": None}}},
            {"$group": {"_id": f"${field}", "count": {"$sum": 1}}},
        ]
        try:
            for entry in self.collection.aggregate(pipeline):
                key = entry.get("_id")
                if key is None:
                    continue
                try:
                    counts[key] = int(entry.get("count", 0) or 0)
                except (TypeError, ValueError):
                    counts[key] = 0
        except PyMongoError as exc:
            raise UnexpectedError(f"count_by on {self.name} failed") from exc
        return counts

    def _duplicate_message(self) -> str:
        return f"{self.label} with this {self.slug_field or 'key'} already exists"
