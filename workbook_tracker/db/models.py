from enum import Enum
from pydantic import BaseModel, model_validator
from typing import Any, List, Optional
from datetime import datetime


class Mark(str, Enum):
    # Values are the codes stored in grade_sheets.marks
    UNMARKED = ""
    CORRECT = "O"
    INCORRECT = "X"
    PARTIAL = "T"

    @property
    def symbol(self) -> str:
        return MARK_SYMBOLS[self]

    @classmethod
    def parse(cls, value: Any) -> "Mark":
        """Unknown or missing stored values read as unmarked."""
        if isinstance(value, Mark):
            return value
        try:
            return cls(value)
        except ValueError:
            return cls.UNMARKED

    @classmethod
    def from_input(cls, value: Any) -> "Mark":
        """Strict parse of caller input: a storage code ("O") or a name ("correct")."""
        if isinstance(value, Mark):
            return value
        if isinstance(value, str):
            if value in cls._value2member_map_:
                return cls(value)
            if value.upper() in cls.__members__:
                return cls[value.upper()]
        raise ValueError(f"Unknown mark: {value!r}")


MARK_SYMBOLS = {
    Mark.UNMARKED: "",
    Mark.CORRECT: "○",
    Mark.INCORRECT: "×",
    Mark.PARTIAL: "△",
}

_CYCLE = [Mark.UNMARKED, Mark.CORRECT, Mark.INCORRECT, Mark.PARTIAL]


def cycle_mark(current: Mark) -> Mark:
    """Next mark for single-click toggling: unmarked, correct, incorrect, partial, unmarked."""
    return _CYCLE[(_CYCLE.index(Mark.parse(current)) + 1) % len(_CYCLE)]


def default_label(idx: int) -> str:
    return str(idx + 1)


def default_labels(start: int, stop: int) -> List[str]:
    return [default_label(i) for i in range(start, stop)]


# Workbook (template) model
class Workbook(BaseModel):
    id: str
    title: str
    total_problem_count: int = 0
    author_id: str
    created_at: Optional[datetime] = None


# Grade sheet model: one owner's marks for one workbook (or standalone)
class GradeSheet(BaseModel):
    id: str
    owner_id: str
    workbook_id: Optional[str] = None
    title: str
    problem_count: int = 0
    marks: List[Mark] = []
    labels: List[str] = []
    last_edited_chapter_id: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @model_validator(mode="before")
    @classmethod
    def normalize_arrays(cls, data: Any) -> Any:
        # Stored rows may be short, long or hold junk; reshape to problem_count
        if not isinstance(data, dict):
            return data
        data = dict(data)
        count = max(int(data.get("problem_count") or 0), 0)
        raw_marks = data.get("marks") or []
        raw_labels = data.get("labels") or []

        marks = [Mark.parse(m) for m in raw_marks[:count]]
        marks += [Mark.UNMARKED] * (count - len(marks))

        labels = []
        for i in range(count):
            label = raw_labels[i] if i < len(raw_labels) else None
            labels.append(str(label) if isinstance(label, str) and label.strip() else default_label(i))

        data["problem_count"] = count
        data["marks"] = marks
        data["labels"] = labels
        return data

    def label_of(self, idx: int) -> str:
        return self.labels[idx] if 0 <= idx < len(self.labels) else default_label(idx)

    def shape_payload(self) -> dict:
        """problem_count, marks and labels as one consistent write."""
        return {
            "problem_count": self.problem_count,
            "marks": [m.value for m in self.marks],
            "labels": list(self.labels),
        }


# Chapter model: a contiguous sub-range of a sheet's problems
class Chapter(BaseModel):
    id: str
    grade_id: str
    start_idx: int
    end_idx: int
    chapter_title: Optional[str] = None
    chapter_note: str = ""
    teacher_memo: str = ""
    next_homework: str = ""
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @model_validator(mode="before")
    @classmethod
    def legacy_note(cls, data: Any) -> Any:
        # Older rows kept the student-facing text in "note"
        if not isinstance(data, dict):
            return data
        data = dict(data)
        legacy = data.pop("note", None)
        if not data.get("chapter_note"):
            data["chapter_note"] = legacy or ""
        for key in ("teacher_memo", "next_homework"):
            if data.get(key) is None:
                data[key] = ""
        return data

    def display_label(self) -> str:
        title = (self.chapter_title or "").strip()
        span = f"{self.start_idx + 1}-{self.end_idx + 1}"
        return f"{title} ({span})" if title else f"Chapter ({span})"


# Profile model (owner directory, read-only here)
class Profile(BaseModel):
    id: str
    name: Optional[str] = None
    role: str  # 'admin', 'teacher', 'student'
    status: Optional[str] = None
    is_approved: bool = False

    @property
    def is_staff(self) -> bool:
        return self.role in STAFF_ROLES


STAFF_ROLES = ("admin", "teacher")
