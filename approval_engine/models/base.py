from typing import Annotated, Any, Dict, Optional, Type, TypeVar
from pydantic import BaseModel, BeforeValidator, Field, ConfigDict

# ObjectId kept as its string form
PyObjectId = Annotated[str, BeforeValidator(str)]

T = TypeVar("T", bound="MongoModel")

MODEL_CONFIG = ConfigDict(
    populate_by_name=True,
    arbitrary_types_allowed=True,
    use_enum_values=True,
)

class EmbeddedModel(BaseModel):
    """Sub-document stored inside a parent document; has no _id of its own."""
    model_config = MODEL_CONFIG

class MongoModel(BaseModel):
    """
    Top-level MongoDB document with _id handling and serialization helpers.
    Enums are stored by value so documents stay plain BSON.
    """
    id: Optional[PyObjectId] = Field(default=None, alias="_id")

    model_config = MODEL_CONFIG

    @classmethod
    def from_mongo(cls: Type[T], data: Optional[Dict[str, Any]]) -> Optional[T]:
        """Convert a MongoDB document to the model."""
        if not data:
            return None
        data = dict(data)
        doc_id = data.pop("_id", None)
        return cls(id=doc_id, **data)

    def to_mongo(self, exclude_none: bool = False) -> Dict[str, Any]:
        """Document ready for insert/replace; an unset _id is left for the server to assign."""
        data = self.model_dump(by_alias=True, exclude_none=exclude_none, mode="python")
        if data.get("_id") is None:
            data.pop("_id", None)
        return data
