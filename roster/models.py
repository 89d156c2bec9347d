"""
Tenant-scoped roster entities. Every natural key is a unique constraint so
the upsert in store.py is atomic at the storage layer.
"""
from __future__ import annotations
import uuid
from datetime import datetime
from typing import Optional
import sqlalchemy as sa
from sqlalchemy import ForeignKey, UniqueConstraint
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


def _new_id() -> str:
    return str(uuid.uuid4())


class Base(DeclarativeBase):
    pass


class TimestampMixin:
    created_at: Mapped[datetime] = mapped_column(sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True), server_default=sa.func.now(), onupdate=sa.func.now(), nullable=False
    )


class School(TimestampMixin, Base):
    __tablename__ = "schools"
    __table_args__ = (UniqueConstraint("tenant_id", "name", name="uq_schools_tenant_name"),)

    id: Mapped[str] = mapped_column(sa.String(36), primary_key=True, default=_new_id)
    tenant_id: Mapped[str] = mapped_column(sa.String(64), nullable=False, index=True)
    name: Mapped[str] = mapped_column(sa.Text, nullable=False)


class Student(TimestampMixin, Base):
    __tablename__ = "students"
    # NULL external ids never collide: such students are always new rows
    __table_args__ = (UniqueConstraint("tenant_id", "external_id", name="uq_students_tenant_external_id"),)

    id: Mapped[str] = mapped_column(sa.String(36), primary_key=True, default=_new_id)
    tenant_id: Mapped[str] = mapped_column(sa.String(64), nullable=False, index=True)
    external_id: Mapped[Optional[str]] = mapped_column(sa.Text)
    first: Mapped[str] = mapped_column(sa.Text, nullable=False)
    last: Mapped[str] = mapped_column(sa.Text, nullable=False)
    grade: Mapped[Optional[str]] = mapped_column(sa.Text)
    email: Mapped[Optional[str]] = mapped_column(sa.Text)
    gender: Mapped[Optional[str]] = mapped_column(sa.Text)
    pronouns: Mapped[Optional[str]] = mapped_column(sa.Text)
    iep: Mapped[bool] = mapped_column(sa.Boolean, nullable=False, default=False)
    ell: Mapped[bool] = mapped_column(sa.Boolean, nullable=False, default=False)
    medical: Mapped[bool] = mapped_column(sa.Boolean, nullable=False, default=False)
    school_id: Mapped[Optional[str]] = mapped_column(sa.String(36), ForeignKey("schools.id", ondelete="SET NULL"))


class Guardian(TimestampMixin, Base):
    __tablename__ = "guardians"
    # dedupe_key is the lower-cased email, or a synthetic key when there is none
    __table_args__ = (UniqueConstraint("tenant_id", "dedupe_key", name="uq_guardians_tenant_key"),)

    id: Mapped[str] = mapped_column(sa.String(36), primary_key=True, default=_new_id)
    tenant_id: Mapped[str] = mapped_column(sa.String(64), nullable=False, index=True)
    dedupe_key: Mapped[str] = mapped_column(sa.Text, nullable=False)
    email: Mapped[Optional[str]] = mapped_column(sa.Text)
    name: Mapped[str] = mapped_column(sa.Text, nullable=False)
    phone: Mapped[Optional[str]] = mapped_column(sa.Text)


class StudentGuardian(TimestampMixin, Base):
    __tablename__ = "student_guardians"
    __table_args__ = (
        UniqueConstraint("tenant_id", "student_id", "guardian_id", name="uq_student_guardians_link"),
    )

    id: Mapped[str] = mapped_column(sa.String(36), primary_key=True, default=_new_id)
    tenant_id: Mapped[str] = mapped_column(sa.String(64), nullable=False, index=True)
    student_id: Mapped[str] = mapped_column(sa.String(36), ForeignKey("students.id", ondelete="CASCADE"), nullable=False)
    guardian_id: Mapped[str] = mapped_column(sa.String(36), ForeignKey("guardians.id", ondelete="CASCADE"), nullable=False)
    relationship: Mapped[str] = mapped_column(sa.Text, nullable=False, default="guardian")


class Classroom(TimestampMixin, Base):
    __tablename__ = "classrooms"
    __table_args__ = (UniqueConstraint("tenant_id", "name", name="uq_classrooms_tenant_name"),)

    id: Mapped[str] = mapped_column(sa.String(36), primary_key=True, default=_new_id)
    tenant_id: Mapped[str] = mapped_column(sa.String(64), nullable=False, index=True)
    name: Mapped[str] = mapped_column(sa.Text, nullable=False)
    grade: Mapped[Optional[str]] = mapped_column(sa.Text)
    school_id: Mapped[Optional[str]] = mapped_column(sa.String(36), ForeignKey("schools.id", ondelete="SET NULL"))


class Enrollment(TimestampMixin, Base):
    __tablename__ = "enrollments"
    __table_args__ = (
        UniqueConstraint("tenant_id", "classroom_id", "student_id", name="uq_enrollments_class_student"),
    )

    id: Mapped[str] = mapped_column(sa.String(36), primary_key=True, default=_new_id)
    tenant_id: Mapped[str] = mapped_column(sa.String(64), nullable=False, index=True)
    classroom_id: Mapped[str] = mapped_column(sa.String(36), ForeignKey("classrooms.id", ondelete="CASCADE"), nullable=False)
    student_id: Mapped[str] = mapped_column(sa.String(36), ForeignKey("students.id", ondelete="CASCADE"), nullable=False)
