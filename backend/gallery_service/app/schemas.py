from pydantic import BaseModel
from typing import Dict, Optional

DEFAULT_METADATA = {
    "title": "Untitled",
    "description": "",
    "category": "Uncategorized",
    "location": "Unknown",
    "photographer": "Anonymous",
}


class ImageMetadata(BaseModel):
    """Descriptive fields attached to the stored object at upload time"""
    title: str = DEFAULT_METADATA["title"]
    description: str = DEFAULT_METADATA["description"]
    category: str = DEFAULT_METADATA["category"]
    location: str = DEFAULT_METADATA["location"]
    photographer: str = DEFAULT_METADATA["photographer"]

    @classmethod
    def from_form(cls, **fields: Optional[str]) -> "ImageMetadata":
        # Empty strings count as missing
        return cls(**{name: value for name, value in fields.items() if value})

    def as_object_metadata(self) -> Dict[str, str]:
        return self.model_dump()


class ImageBase(BaseModel):
    title: str
    description: str
    category: str
    location: str
    photographer: str
    s3_url: str
    s3_key: str


class Image(ImageBase):
    id: int

    class Config:
        from_attributes = True


class UploadResponse(BaseModel):
    success: bool
    message: str
    error: Optional[str] = None
