from sqlalchemy import Column, Integer, String, Text
from backend.gallery_service.app.database import Base


class Image(Base):
    __tablename__ = "images"

    id = Column(Integer, primary_key=True, autoincrement=True)
    title = Column(String(255), nullable=False)
    description = Column(Text, nullable=False, default="")
    category = Column(String(100), nullable=False)
    location = Column(String(255), nullable=False)
    photographer = Column(String(255), nullable=False)
    s3_url = Column(String(1024), nullable=False)
    s3_key = Column(String(512), nullable=False)

    def __repr__(self):
        return f"<Image(id={self.id}, s3_key={self.s3_key})>"
