from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field


class TaskStatus(str, Enum):
    PROCESSING = "Processing"
    COMPLETED = "Completed"
    FAILED = "Failed"


class _FrozenModel(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")


class Dimensions(_FrozenModel):
    length: float = Field(..., ge=0.1, le=1000, description="Front/back panel width in cm")
    width: float = Field(..., ge=0.1, le=1000, description="Side panel width (box depth) in cm")
    height: float = Field(..., ge=0.1, le=1000, description="Panel height in cm")
    bleed_left_right: float = Field(0, ge=0, le=100)
    bleed_top_bottom: float = Field(0, ge=0, le=100)
    inner_bleed: float = Field(0, ge=0, le=100)


class PrintConfig(_FrozenModel):
    dpi: int = Field(300, ge=72, le=1200)
    color_mode: str = Field("rgb", pattern="^(rgb|cmyk)$")


class Specifications(_FrozenModel):
    dimensions: Dimensions
    print_config: PrintConfig = PrintConfig()


class MainPanel(_FrozenModel):
    brand_name: str = ""
    product_name: str = ""
    capacity_info: str = ""
    capacity_info_back: str = ""
    manufacturer: str = ""
    address: str = ""
    selling_points: List[str] = Field(default_factory=list)


class InfoPanel(_FrozenModel):
    ingredients: str = ""
    manufacturer: str = ""
    origin: str = ""
    warnings: str = ""
    directions: str = ""
    address: str = ""


class TextAssets(_FrozenModel):
    main_panel: MainPanel = MainPanel()
    info_panel: InfoPanel = InfoPanel()


class ImageRef(_FrozenModel):
    url: str = Field(..., min_length=1)


class ImageAssets(_FrozenModel):
    barcode: Optional[ImageRef] = None
    logo: Optional[ImageRef] = None


class Assets(_FrozenModel):
    texts: TextAssets = TextAssets()
    images: ImageAssets = ImageAssets()


class GenerationRequest(_FrozenModel):
    project_name: str = Field(..., min_length=1, max_length=200)
    specifications: Specifications
    assets: Assets = Assets()


class TaskRecord(BaseModel):
    task_id: str
    status: TaskStatus
    progress: int = Field(0, ge=0, le=100)
    message: str = ""
    download_url: Optional[str] = None
    created_at: datetime
    updated_at: datetime

    @property
    def is_terminal(self) -> bool:
        return self.status in (TaskStatus.COMPLETED, TaskStatus.FAILED)


class SubmitResponse(BaseModel):
    task_id: str
    message: str
