import enum
from datetime import datetime, timezone

from sqlalchemy.orm import declarative_base, relationship
from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    JSON,
    Numeric,
    String,
    Text,
)
Base = declarative_base()


def utcnow() -> datetime:
    """Naive UTC timestamp, the form every DateTime column here stores."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class JobStatus(enum.IntEnum):
    PENDING = 0
    PROCESSING = 1
    COMPLETED = 2
    FAILED = 3


class PreviewType(enum.IntEnum):
    SINGLE_IMAGE = 0
    PREVIEW_360 = 1


class AnalysisStatus(enum.IntEnum):
    PENDING = 0
    ANALYZING = 1
    COMPLETED = 2
    FAILED = 3


class SuggestionCategory(enum.IntEnum):
    MATERIAL = 0
    STONES = 1
    PROPORTIONS = 2
    CRAFTSMANSHIP = 3


_ONE_OWNER = "(user_id IS NULL) <> (guest_client_id IS NULL)"


# ===== Catalog (read models) =====

class Category(Base):
    __tablename__ = "jewelry_categories"
    id = Column(Integer, primary_key=True)
    code = Column(String, nullable=False, unique=True)
    name = Column(String, nullable=False)
    description = Column(Text, nullable=True)
    ai_category_description = Column(Text, nullable=True)


class JewelryBaseModel(Base):
    __tablename__ = "jewelry_base_models"
    id = Column(String, primary_key=True, index=True)
    category_id = Column(Integer, ForeignKey("jewelry_categories.id"), nullable=False)
    name = Column(String, nullable=False)
    code = Column(String, nullable=False)
    description = Column(Text, nullable=True)
    ai_description = Column(Text, nullable=True)
    base_price = Column(Numeric(12, 2), nullable=False, default=0)
    is_active = Column(Boolean, nullable=False, default=True)
    # Free-form JSON text; unparseable values are ignored when building prompts
    metadata_json = Column(Text, nullable=True)

    category = relationship("Category")


class Material(Base):
    __tablename__ = "materials"
    id = Column(Integer, primary_key=True)
    code = Column(String, nullable=False, unique=True)
    name = Column(String, nullable=False)
    metal_type = Column(String, nullable=False)
    karat = Column(Integer, nullable=True)
    color_hex = Column(String, nullable=True)
    price_factor = Column(Float, nullable=False, default=1.0)


class StoneType(Base):
    __tablename__ = "stone_types"
    id = Column(Integer, primary_key=True)
    code = Column(String, nullable=False, unique=True)
    name = Column(String, nullable=False)
    color = Column(String, nullable=True)
    default_price_per_carat = Column(Numeric(12, 2), nullable=False, default=0)


class JewelryConfiguration(Base):
    __tablename__ = "jewelry_configurations"
    id = Column(String, primary_key=True, index=True)
    user_id = Column(String, nullable=True, index=True)
    base_model_id = Column(String, ForeignKey("jewelry_base_models.id"), nullable=False)
    material_id = Column(Integer, ForeignKey("materials.id"), nullable=False)
    name = Column(String, nullable=True)
    engraving_text = Column(String, nullable=True)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    base_model = relationship("JewelryBaseModel")
    material = relationship("Material")
    stones = relationship(
        "ConfigurationStone",
        order_by="ConfigurationStone.position_index",
        back_populates="configuration",
    )


class ConfigurationStone(Base):
    __tablename__ = "jewelry_configuration_stones"
    id = Column(String, primary_key=True)
    configuration_id = Column(String, ForeignKey("jewelry_configurations.id"), nullable=False, index=True)
    stone_type_id = Column(Integer, ForeignKey("stone_types.id"), nullable=False)
    position_index = Column(Integer, nullable=False, default=0)
    carat_weight = Column(Float, nullable=True)
    size_mm = Column(Float, nullable=True)
    count = Column(Integer, nullable=False, default=1)

    configuration = relationship("JewelryConfiguration", back_populates="stones")
    stone_type = relationship("StoneType")


# ===== AI jobs =====

class AiPreviewJob(Base):
    __tablename__ = "ai_preview_jobs"
    __table_args__ = (CheckConstraint(_ONE_OWNER, name="ck_ai_preview_jobs_one_owner"),)

    id = Column(String, primary_key=True, index=True)
    configuration_id = Column(String, ForeignKey("jewelry_configurations.id"), nullable=False, index=True)
    user_id = Column(String, nullable=True, index=True)
    guest_client_id = Column(String, nullable=True, index=True)
    type = Column(Integer, nullable=False, default=PreviewType.SINGLE_IMAGE)
    frame_count = Column(Integer, nullable=True)
    status = Column(Integer, nullable=False, default=JobStatus.PENDING, index=True)
    prompt = Column(Text, nullable=True)
    ai_config_json = Column(JSON, nullable=True)
    error_message = Column(Text, nullable=True)
    single_image_url = Column(String, nullable=True)
    frames_json = Column(JSON, nullable=True)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)


class UpgradeAnalysis(Base):
    __tablename__ = "upgrade_analyses"
    __table_args__ = (CheckConstraint(_ONE_OWNER, name="ck_upgrade_analyses_one_owner"),)

    id = Column(String, primary_key=True, index=True)
    user_id = Column(String, nullable=True, index=True)
    guest_client_id = Column(String, nullable=True, index=True)
    original_image_url = Column(String, nullable=False)
    status = Column(Integer, nullable=False, default=AnalysisStatus.PENDING)
    jewelry_type = Column(String, nullable=True)
    metal_type = Column(String, nullable=True)
    detected_stones = Column(JSON, nullable=True)
    style = Column(String, nullable=True)
    confidence_score = Column(Float, nullable=True)
    analysis_data = Column(JSON, nullable=True)
    suggestions = Column(JSON, nullable=True)
    error_message = Column(Text, nullable=True)
    created_at = Column(DateTime, default=utcnow)
    completed_at = Column(DateTime, nullable=True)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)


class UpgradePreviewJob(Base):
    __tablename__ = "upgrade_preview_jobs"
    __table_args__ = (CheckConstraint(_ONE_OWNER, name="ck_upgrade_preview_jobs_one_owner"),)

    id = Column(String, primary_key=True, index=True)
    analysis_id = Column(String, ForeignKey("upgrade_analyses.id"), nullable=False, index=True)
    user_id = Column(String, nullable=True, index=True)
    guest_client_id = Column(String, nullable=True, index=True)
    status = Column(Integer, nullable=False, default=JobStatus.PENDING, index=True)
    kept_original = Column(Boolean, nullable=False, default=False)
    applied_suggestion_ids = Column(JSON, nullable=True)
    prompt = Column(Text, nullable=True)
    enhanced_image_url = Column(String, nullable=True)
    error_message = Column(Text, nullable=True)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)
