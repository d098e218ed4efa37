import copy
import logging
import math
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

from bson import ObjectId
from bson.errors import InvalidId

from media import extract_public_id


# --- Errors ---


class CatalogError(Exception):
    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(CatalogError):
    status_code = 400


class NotFoundError(CatalogError):
    status_code = 404


class ConflictError(CatalogError):
    status_code = 409


class UnexpectedError(CatalogError):
    status_code = 500


class MediaResolutionWarning(UserWarning):
    pass


class MediaDeletionWarning(UserWarning):
    pass


# --- Field normalizers ---
# Each takes the raw payload value and returns the value to store, or raises
# ValidationError.


def normalize_object_id_value(value) -> Optional[ObjectId]:
    if isinstance(value, ObjectId):
        return value
    try:
        return ObjectId(str(value))
    except (InvalidId, TypeError):
        return None


def as_text(value) -> str:
    return str(value or "").strip()


def as_positive_price(label: str) -> Callable[[Any], float]:
    def normalize(value) -> float:
        if isinstance(value, bool):
            raise ValidationError(f"{label} must be a valid number")
        try:
            price = round(float(value), 2)
        except (TypeError, ValueError):
            raise ValidationError(f"{label} must be a valid number")
        if not math.isfinite(price):
            raise ValidationError(f"{label} must be a valid number")
        if price <= 0:
            raise ValidationError(f"{label} must be greater than zero")
        return price

    return normalize


def as_optional_price(label: str) -> Callable[[Any], Optional[float]]:
    required = as_positive_price(label)

    def normalize(value) -> Optional[float]:
        if value is None or (isinstance(value, str) and not value.strip()):
            return None
        return required(value)

    return normalize


def as_bool(value) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in {"1", "true", "yes", "on"}
    return bool(value)


def as_locator_list(value) -> List[str]:
    if value is None:
        return []
    if isinstance(value, str):
        value = [value]
    if not isinstance(value, (list, tuple)):
        raise ValidationError("images must be a list of URLs")
    return [str(item).strip() for item in value if item and str(item).strip()]


def as_optional_locator(value) -> Optional[str]:
    locator = as_text(value)
    return locator or None


PRODUCT_ATTRIBUTE_FIELDS = ("material", "weight", "dimensions", "gemstone", "purity")


def as_product_attributes(value) -> Dict[str, str]:
    if not isinstance(value, Mapping):
        return {}
    attributes: Dict[str, str] = {}
    for key in PRODUCT_ATTRIBUTE_FIELDS:
        raw = value.get(key)
        if raw is None:
            continue
        trimmed = str(raw).strip()
        if trimmed:
            attributes[key] = trimmed
    return attributes


def as_reference(label: str) -> Callable[[Any], ObjectId]:
    def normalize(value) -> ObjectId:
        object_id = normalize_object_id_value(value)
        if object_id is None:
            raise ValidationError(f"Invalid {label.lower()} ID format")
        return object_id

    return normalize


# --- Schemas ---


@dataclass(frozen=True)
class EntitySchema:
    """Allow-list declaration for one catalog entity type.

    ``required`` fields must be present and non-empty on create (and may not
    be blanked by an update). Anything outside ``required`` + ``optional`` is
    ignored.
    """

    kind: str
    label: str
    collection: str
    required: Tuple[str, ...]
    optional: Tuple[str, ...] = ()
    slug_field: Optional[str] = "slug"
    media_field: Optional[str] = None
    normalizers: Dict[str, Callable[[Any], Any]] = field(default_factory=dict)
    defaults: Dict[str, Any] = field(default_factory=dict)
    references: Dict[str, str] = field(default_factory=dict)

    @property
    def allowed(self) -> Tuple[str, ...]:
        return self.required + self.optional

    def normalize(self, name: str, value):
        normalizer = self.normalizers.get(name, as_text)
        return normalizer(value)

    def media_refs(self, document: Mapping) -> List[str]:
        if not self.media_field:
            return []
        value = document.get(self.media_field)
        if not value:
            return []
        if isinstance(value, (list, tuple)):
            return [str(item) for item in value if item]
        return [str(value)]


PRODUCT_SCHEMA = EntitySchema(
    kind="product",
    label="Product",
    collection="products",
    required=("name", "description", "price", "images", "category", "slug"),
    optional=("discountPrice", "inStock", "featured", "attributes"),
    media_field="images",
    normalizers={
        "price": as_positive_price("Price"),
        "discountPrice": as_optional_price("Discount price"),
        "images": as_locator_list,
        "category": as_reference("Category"),
        "inStock": as_bool,
        "featured": as_bool,
        "attributes": as_product_attributes,
    },
    defaults={"inStock": True, "featured": False, "attributes": {}},
    references={"category": "category"},
)

CATEGORY_SCHEMA = EntitySchema(
    kind="category",
    label="Category",
    collection="categories",
    required=("name", "slug"),
    optional=("description", "image"),
    media_field="image",
    normalizers={"image": as_optional_locator},
)

TESTIMONIAL_SCHEMA = EntitySchema(
    kind="testimonial",
    label="Testimonial",
    collection="testimonials",
    required=("name", "review"),
    optional=("image",),
    slug_field=None,
    media_field="image",
    normalizers={"image": as_optional_locator},
)


def is_blank(value) -> bool:
    if value is None:
        return True
    if isinstance(value, (str, list, tuple, dict)):
        return len(value) == 0
    return False


def serialize_entity(document: Optional[Mapping]) -> Dict:
    if not document:
        return {}
    serialized: Dict[str, Any] = {}
    for key, value in document.items():
        if key == "created_at":
            key = "createdAt"
        elif key == "updated_at":
            key = "updatedAt"
        if isinstance(value, ObjectId):
            value = str(value)
        elif isinstance(value, datetime):
            value = value.isoformat() + "Z"
        serialized[key] = value
    return serialized


# --- Lifecycle ---


@dataclass
class DeleteResult:
    entity_id: str
    attempted: List[str] = field(default_factory=list)
    warnings: List[UserWarning] = field(default_factory=list)


class CatalogManager:
    """Create/update/delete contract for one entity type.

    Storage and media collaborators are injected. Media cleanup on delete is
    best-effort: resolution and deletion failures are logged and collected
    on the returned ``DeleteResult`` but never stop the record removal.
    """

    def __init__(
        self,
        schema: EntitySchema,
        store,
        media_host=None,
        references: Optional[Dict[str, "CatalogManager"]] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.schema = schema
        self.store = store
        self.media_host = media_host
        self.references = references or {}
        self.logger = logger or logging.getLogger(__name__)

    # Reads

    def get(self, entity_id) -> Dict:
        object_id = self._parse_id(entity_id)
        document = self.store.find_by_id(object_id)
        if not document:
            raise NotFoundError(f"{self.schema.label} not found")
        return document

    def get_by_slug(self, slug: str) -> Dict:
        candidate = as_text(slug)
        document = self.store.find_by_slug(candidate) if candidate else None
        if not document:
            raise NotFoundError(f"{self.schema.label} not found")
        return document

    def list(self, query: Optional[Dict] = None, limit: int = 0) -> List[Dict]:
        return self.store.list(query, limit=limit)

    # Writes

    def create(self, payload) -> Dict:
        schema = self.schema
        if not isinstance(payload, Mapping):
            raise ValidationError("Request body must be a JSON object")

        missing = [name for name in schema.required if is_blank(payload.get(name))]
        if missing:
            raise ValidationError(
                f"Missing required fields ({', '.join(schema.required)})"
            )

        document: Dict[str, Any] = copy.deepcopy(schema.defaults)
        for name in schema.allowed:
            if name not in payload:
                continue
            value = schema.normalize(name, payload[name])
            if value is None:
                continue
            document[name] = value

        # Normalizers may strip a required value down to nothing (e.g. "  ").
        missing = [name for name in schema.required if is_blank(document.get(name))]
        if missing:
            raise ValidationError(
                f"Missing required fields ({', '.join(schema.required)})"
            )

        self._check_references(document)

        if schema.slug_field:
            slug = document[schema.slug_field]
            if self.store.find_by_slug(slug):
                raise ConflictError(f"{schema.label} with this slug already exists")

        timestamp = datetime.utcnow()
        document["created_at"] = timestamp
        document["updated_at"] = timestamp
        return self.store.insert(document)

    def update(self, entity_id, payload) -> Dict:
        schema = self.schema
        if not isinstance(payload, Mapping):
            raise ValidationError("Request body must be a JSON object")

        existing = self.get(entity_id)

        changes: Dict[str, Any] = {}
        for name in schema.allowed:
            if name not in payload:
                continue
            value = schema.normalize(name, payload[name])
            if name in schema.required and is_blank(value):
                raise ValidationError(f"{name} cannot be empty")
            changes[name] = value

        self._check_references(changes)

        slug_field = schema.slug_field
        if slug_field and slug_field in changes:
            new_slug = changes[slug_field]
            if new_slug != existing.get(slug_field):
                collision = self.store.find_by_slug(new_slug)
                if collision and collision["_id"] != existing["_id"]:
                    raise ConflictError(
                        f"{schema.label} with this slug already exists"
                    )

        changes["updated_at"] = datetime.utcnow()
        updated = self.store.update_by_id(existing["_id"], changes)
        if not updated:
            raise NotFoundError(f"{schema.label} not found")
        return updated

    def delete(self, entity_id) -> DeleteResult:
        document = self.get(entity_id)
        result = DeleteResult(entity_id=str(document["_id"]))

        for locator in self.schema.media_refs(document):
            public_id = extract_public_id(locator)
            if not public_id:
                warning = MediaResolutionWarning(
                    f"Could not extract public ID from media URL: {locator}"
                )
                self.logger.warning("%s", warning)
                result.warnings.append(warning)
                continue
            warning = self._destroy_media(public_id)
            if self.media_host is not None:
                result.attempted.append(public_id)
            if warning:
                result.warnings.append(warning)

        self.store.delete_by_id(document["_id"])
        return result

    # Helpers

    def _parse_id(self, entity_id) -> ObjectId:
        label = self.schema.label
        if is_blank(entity_id):
            raise ValidationError(f"{label} ID is required")
        object_id = normalize_object_id_value(entity_id)
        if object_id is None:
            raise ValidationError(f"Invalid {label.lower()} ID format")
        return object_id

    def _check_references(self, values: Mapping):
        for name, kind in self.schema.references.items():
            if name not in values:
                continue
            manager = self.references.get(kind)
            if manager is None:
                continue
            manager.get(values[name])

    def _destroy_media(self, public_id: str) -> Optional[MediaDeletionWarning]:
        if self.media_host is None:
            warning = MediaDeletionWarning(
                f"No media host configured; {public_id} was left in place"
            )
            self.logger.warning("%s", warning)
            return warning

        self.logger.info("Attempting to delete media with public ID: %s", public_id)
        try:
            outcome = self.media_host.destroy(public_id)
        except Exception as exc:
            warning = MediaDeletionWarning(
                f"Error deleting media {public_id}: {exc}"
            )
            self.logger.error("%s", warning)
            return warning

        if outcome != "ok":
            warning = MediaDeletionWarning(
                f"Media deletion for {public_id} returned: {outcome}"
            )
            self.logger.warning("%s", warning)
            return warning
        return None
