"""
Pydantic schemas for request/response validation
"""
from pydantic import BaseModel, Field
from typing import Optional, List, Dict, Any
from datetime import datetime

# ===== Common Schemas =====

class HealthResponse(BaseModel):
    status: str
    service: str

# ===== AI Preview Schemas =====

class CreateAiPreviewRequest(BaseModel):
    configurationId: str = Field(min_length=1)
    # 0 = single image, 1 = 360 frame set
    type: int = Field(ge=0, le=1)
    guestClientId: Optional[str] = Field(default=None, max_length=128)
    frameCount: Optional[int] = Field(default=None, ge=4, le=36)

class AiPreviewJobResponse(BaseModel):
    id: str
    configurationId: str
    type: int
    status: int
    frameCount: Optional[int] = None
    singleImageUrl: Optional[str] = None
    framesUrls: Optional[List[str]] = None
    prompt: Optional[str] = None
    aiConfig: Optional[Dict[str, Any]] = None
    errorMessage: Optional[str] = None
    guestClientId: Optional[str] = None
    createdAt: Optional[datetime] = None
    updatedAt: Optional[datetime] = None

# ===== Upgrade Schemas =====

class UpgradeUploadResponse(BaseModel):
    analysisId: str
    imageUrl: str
    status: int
    message: str

class DetectedStone(BaseModel):
    stoneType: str
    description: Optional[str] = None
    position: str = "detected"
    estimatedCount: int = 1

class ClarificationRequestDto(BaseModel):
    type: str
    message: str

class UpgradeAnalysisResponse(BaseModel):
    id: str
    status: int
    originalImageUrl: str
    jewelryType: Optional[str] = None
    metalType: Optional[str] = None
    detectedStones: Optional[List[DetectedStone]] = None
    style: Optional[str] = None
    confidenceScore: Optional[float] = None
    pieceDescription: Optional[str] = None
    confidenceNote: Optional[str] = None
    apparentFinish: Optional[str] = None
    analysisLimitations: Optional[str] = None
    clarificationRequest: Optional[ClarificationRequestDto] = None
    previewGuidance: Optional[Dict[str, Any]] = None
    suggestionCount: int = 0
    errorMessage: Optional[str] = None
    createdAt: Optional[datetime] = None
    completedAt: Optional[datetime] = None

class UpgradeSuggestion(BaseModel):
    id: str
    category: int
    categoryId: str
    title: str
    description: str = ""
    benefit: str = ""
    impactLevel: str = "moderate"
    characterNote: Optional[str] = None
    conflictGroup: Optional[str] = None

class SuggestionGroup(BaseModel):
    category: int
    categoryId: str
    label: str
    suggestions: List[UpgradeSuggestion]

class KeepOriginalDto(BaseModel):
    title: str
    description: str
    isDefault: bool = True

class UpgradeSuggestionsResponse(BaseModel):
    analysisId: str
    suggestions: List[UpgradeSuggestion]
    categories: List[SuggestionGroup]
    keepOriginal: KeepOriginalDto

class CreateUpgradePreviewRequest(BaseModel):
    analysisId: str = Field(min_length=1)
    selectedSuggestionIds: List[str] = Field(default_factory=list)
    keepOriginal: bool = False
    guestClientId: Optional[str] = Field(default=None, max_length=128)

class UpgradePreviewJobResponse(BaseModel):
    id: str
    analysisId: str
    status: int
    keptOriginal: bool
    appliedSuggestionIds: List[str] = Field(default_factory=list)
    prompt: Optional[str] = None
    enhancedImageUrl: Optional[str] = None
    originalImageUrl: Optional[str] = None
    errorMessage: Optional[str] = None
    createdAt: Optional[datetime] = None
    updatedAt: Optional[datetime] = None
