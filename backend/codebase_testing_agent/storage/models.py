import enum
from sqlalchemy import (
    Column,
    Integer,
    String,
    DateTime,
    Enum,
    JSON,
    Boolean,
    ForeignKey,
    Text,
    Index,
)
from sqlalchemy.orm import declarative_base, relationship
from sqlalchemy.sql import func

Base = declarative_base()


class ProjectAnalysisStatus(enum.Enum):
    """Project-level analysis status shown on dashboards."""

    PENDING = "pending"
    ANALYZING = "analyzing"
    COMPLETED = "completed"
    FAILED = "failed"


class AgentRole(enum.Enum):
    SUPERVISOR = "supervisor"
    ANALYZER = "analyzer"
    RISK = "risk"
    TEST = "test"
    ENVIRONMENT = "environment"


class AgentStatus(enum.Enum):
    READY = "ready"
    BUSY = "busy"
    ERROR = "error"


class AnalysisKind(enum.Enum):
    CODE_ANALYSIS = "code_analysis"
    ARCHITECTURE_REVIEW = "architecture_review"
    RISK_ASSESSMENT = "risk_assessment"
    TEST_GENERATION = "test_generation"
    TEST_SCRIPT = "test_script"


class AnalysisStatus(enum.Enum):
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class TestCaseStatus(enum.Enum):
    GENERATED = "generated"
    PENDING = "pending"
    RUNNING = "running"
    PASSED = "passed"
    FAILED = "failed"


def _enum_column(enum_cls, name: str, default):
    return Column(
        Enum(
            enum_cls,
            name=name,
            values_callable=lambda enum_cls: [e.value for e in enum_cls],
        ),
        nullable=False,
        default=default,
    )


class Project(Base):
    __tablename__ = "projects"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String, nullable=False)
    description = Column(Text, nullable=True)
    source_type = Column(String, nullable=False, default="unknown")
    source_url = Column(String, nullable=True)
    repository_data = Column(JSON, nullable=True)
    analysis_status = _enum_column(
        ProjectAnalysisStatus, "projectanalysisstatus", ProjectAnalysisStatus.PENDING
    )
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    # Relationships
    workflow = relationship(
        "WorkflowState",
        back_populates="project",
        uselist=False,
        cascade="all, delete-orphan",
    )
    analyses = relationship(
        "Analysis",
        back_populates="project",
        cascade="all, delete-orphan",
    )
    test_cases = relationship(
        "TestCase",
        back_populates="project",
        cascade="all, delete-orphan",
    )


class WorkflowState(Base):
    """Six monotonic stage flags per project plus a change counter."""

    __tablename__ = "workflow_states"

    project_id = Column(
        Integer, ForeignKey("projects.id", ondelete="CASCADE"), primary_key=True
    )
    project_created = Column(Boolean, nullable=False, default=False)
    analysis_started = Column(Boolean, nullable=False, default=False)
    analysis_completed = Column(Boolean, nullable=False, default=False)
    tests_generated = Column(Boolean, nullable=False, default=False)
    scripts_generated = Column(Boolean, nullable=False, default=False)
    tests_run = Column(Boolean, nullable=False, default=False)
    # Workspace "current project" pointer; cleared together with the flags on reset.
    active = Column(Boolean, nullable=False, default=False, index=True)
    version = Column(Integer, nullable=False, default=0)
    last_stage = Column(JSON, nullable=True)
    # Set while a stage runs in any process (API or arq worker).
    running_stage = Column(String, nullable=True)
    cancel_requested = Column(Boolean, nullable=False, default=False)
    updated_at = Column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    project = relationship("Project", back_populates="workflow")


class Analysis(Base):
    __tablename__ = "analyses"
    __table_args__ = (Index("ix_analyses_project_kind", "project_id", "kind"),)

    id = Column(Integer, primary_key=True, index=True)
    project_id = Column(
        Integer, ForeignKey("projects.id"), nullable=False, index=True
    )
    agent_id = Column(Integer, nullable=True)
    kind = _enum_column(AnalysisKind, "analysiskind", AnalysisKind.CODE_ANALYSIS)
    status = _enum_column(AnalysisStatus, "analysisstatus", AnalysisStatus.COMPLETED)
    results = Column(JSON, nullable=True)
    test_case_id = Column(Integer, nullable=True, index=True)
    started_at = Column(DateTime(timezone=True), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)

    project = relationship("Project", back_populates="analyses")


class TestCase(Base):
    __tablename__ = "test_cases"

    id = Column(Integer, primary_key=True, index=True)
    project_id = Column(
        Integer, ForeignKey("projects.id"), nullable=False, index=True
    )
    name = Column(String, nullable=False)
    description = Column(Text, nullable=True)
    type = Column(String, nullable=False, default="unknown")
    priority = Column(String, nullable=False, default="medium")
    framework = Column(String, nullable=False, default="unknown")
    category = Column(String, nullable=True)
    status = _enum_column(TestCaseStatus, "testcasestatus", TestCaseStatus.GENERATED)
    execution_time = Column(Integer, nullable=True)
    results = Column(JSON, nullable=True)
    last_reported_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    project = relationship("Project", back_populates="test_cases")
