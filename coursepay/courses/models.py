# coursepay/courses/models.py
from sqlalchemy import Column, String, Integer, BigInteger, Boolean

from ..database import Base


class Course(Base):
    """
    Read model of the course catalogue.

    Owned by the catalogue service; this service only reads price,
    availability and ownership from it.
    """
    __tablename__ = "courses"

    id = Column(Integer, primary_key=True, autoincrement=True)
    title = Column(String, nullable=False)
    price = Column(BigInteger, nullable=False, default=0)  # VND
    is_free = Column(Boolean, nullable=False, default=False)
    instructor_id = Column(String, nullable=False, index=True)
    category_id = Column(Integer, nullable=True, index=True)
    is_published = Column(Boolean, nullable=False, default=False)

    def __repr__(self):
        return f"<Course {self.id} - {self.title}>"
