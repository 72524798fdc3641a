from sqlalchemy import Column, Integer, String, Boolean, DateTime, ForeignKey, Index
from sqlalchemy.sql import func
from sqlalchemy.orm import relationship

from attendance_sync.core.database import Base


class School(Base):
    __tablename__ = "schools"

    id = Column(Integer, primary_key=True, index=True)

    # Local and SIS identifiers
    school_code = Column(String(20), unique=True, nullable=False)
    aeries_school_code = Column(String(20), nullable=False)
    name = Column(String(255), nullable=True)
    is_active = Column(Boolean, default=True, nullable=False)

    # Timestamps
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    # Relationships
    students = relationship("Student", back_populates="school")

    def __repr__(self) -> str:
        return f"<School {self.school_code} (aeries={self.aeries_school_code})>"


class Student(Base):
    __tablename__ = "students"

    id = Column(Integer, primary_key=True, index=True)

    # Foreign keys
    school_id = Column(Integer, ForeignKey("schools.id"), nullable=False)

    # SIS identifier
    aeries_student_id = Column(String(50), nullable=False)
    first_name = Column(String(100), nullable=True)
    last_name = Column(String(100), nullable=True)
    is_active = Column(Boolean, default=True, nullable=False)

    # Timestamps
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    # Relationships
    school = relationship("School", back_populates="students")

    __table_args__ = (
        Index("ix_students_school_aeries_id", "school_id", "aeries_student_id"),
    )
