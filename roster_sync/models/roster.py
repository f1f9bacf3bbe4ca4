from datetime import date, datetime

from sqlalchemy import Boolean, Date, DateTime, String, UniqueConstraint
from sqlalchemy.orm import Mapped, declarative_base, mapped_column

from roster_sync.utils.timestamps import utcnow

# Tables that live inside each tenant's own database, separate from the control metadata.
TenantBase = declarative_base()


class RosterRecordMixin:
    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    source_id: Mapped[str] = mapped_column(String(64), unique=True, index=True)
    source_last_modified: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, index=True)
    deactivated_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    last_synced_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)


class Student(RosterRecordMixin, TenantBase):
    __tablename__ = "students"

    first_name: Mapped[str | None] = mapped_column(String(100), nullable=True)
    middle_name: Mapped[str | None] = mapped_column(String(100), nullable=True)
    last_name: Mapped[str | None] = mapped_column(String(100), nullable=True)
    email: Mapped[str | None] = mapped_column(String(255), nullable=True)
    grade: Mapped[str | None] = mapped_column(String(16), nullable=True)
    student_number: Mapped[str | None] = mapped_column(String(64), nullable=True)
    state_id: Mapped[str | None] = mapped_column(String(64), nullable=True)


class Teacher(RosterRecordMixin, TenantBase):
    __tablename__ = "teachers"

    first_name: Mapped[str | None] = mapped_column(String(100), nullable=True)
    last_name: Mapped[str | None] = mapped_column(String(100), nullable=True)
    email: Mapped[str | None] = mapped_column(String(255), nullable=True)
    title: Mapped[str | None] = mapped_column(String(100), nullable=True)
    teacher_number: Mapped[str | None] = mapped_column(String(64), nullable=True)


class Section(RosterRecordMixin, TenantBase):
    __tablename__ = "sections"

    name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    period: Mapped[str | None] = mapped_column(String(32), nullable=True)
    subject: Mapped[str | None] = mapped_column(String(100), nullable=True)
    grade: Mapped[str | None] = mapped_column(String(16), nullable=True)
    course_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    term_id: Mapped[str | None] = mapped_column(String(64), nullable=True)


class Admin(RosterRecordMixin, TenantBase):
    __tablename__ = "admins"

    first_name: Mapped[str | None] = mapped_column(String(100), nullable=True)
    last_name: Mapped[str | None] = mapped_column(String(100), nullable=True)
    email: Mapped[str | None] = mapped_column(String(255), nullable=True)
    title: Mapped[str | None] = mapped_column(String(100), nullable=True)


class Term(RosterRecordMixin, TenantBase):
    __tablename__ = "terms"

    name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    start_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    end_date: Mapped[date | None] = mapped_column(Date, nullable=True)


# Enrollment links are keyed by source ids so they survive either side being synced first.
class StudentSection(TenantBase):
    __tablename__ = "student_sections"
    __table_args__ = (UniqueConstraint("section_source_id", "student_source_id"),)

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    section_source_id: Mapped[str] = mapped_column(String(64), index=True)
    student_source_id: Mapped[str] = mapped_column(String(64), index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)


class TeacherSection(TenantBase):
    __tablename__ = "teacher_sections"
    __table_args__ = (UniqueConstraint("section_source_id", "teacher_source_id"),)

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    section_source_id: Mapped[str] = mapped_column(String(64), index=True)
    teacher_source_id: Mapped[str] = mapped_column(String(64), index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
