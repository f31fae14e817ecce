import os
from typing import List
from dataclasses import dataclass, field

@dataclass
class ServiceConfig:
    """Configuration class for the Loomi Cutout service."""

    # API Settings
    title: str = "Loomi Cutout API"
    description: str = "Subject segmentation, background removal and garment analysis"
    version: str = "2.1.0"

    # Server Settings
    host: str = "0.0.0.0"
    port: int = 7860
    workers: int = 1
    reload: bool = False

    # File Upload Settings
    max_upload_mb: int = 10
    max_upload_bytes: int = field(init=False)
    allowed_content_types: set = field(default_factory=lambda: {"image/jpeg", "image/png", "image/webp"})

    # Model Settings
    segmentation_backend: str = "segformer"
    primary_checkpoint: str = "mattmdjaga/segformer_b2_clothes"
    secondary_checkpoint: str = "mattmdjaga/segformer_b2_clothes"
    primary_input_size: int = 512
    secondary_input_size: int = 384
    model_warmup_on_startup: bool = True
    hf_cache_dir: str = "/tmp/hf_cache"

    # Pipeline defaults
    default_quality: float = 0.9
    default_edge_blur_radius: int = 2
    target_max_width: int = 1024
    target_max_height: int = 1024
    output_format: str = "PNG"
    processing_timeout_seconds: float = 60.0

    # CORS Settings
    allowed_origins: List[str] = field(default_factory=lambda: ["*"])

    # Logging Settings
    log_level: str = "INFO"
    log_format: str = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

    def __post_init__(self):
        """Post-initialization to set computed fields and load from environment."""
        # Load from environment variables
        self.host = os.getenv("HOST", self.host)
        self.port = int(os.getenv("PORT", str(self.port)))
        self.workers = int(os.getenv("WORKERS", str(self.workers)))
        self.reload = os.getenv("RELOAD", str(self.reload)).lower() == "true"

        self.max_upload_mb = int(os.getenv("MAX_UPLOAD_MB", str(self.max_upload_mb)))
        self.max_upload_bytes = self.max_upload_mb * 1024 * 1024

        # Handle allowed content types
        content_types_env = os.getenv("ALLOWED_CONTENT_TYPES")
        if content_types_env:
            self.allowed_content_types = {c.strip() for c in content_types_env.split(",") if c.strip()}

        self.segmentation_backend = os.getenv("SEGMENTATION_BACKEND", self.segmentation_backend).lower()
        self.primary_checkpoint = os.getenv("PRIMARY_CHECKPOINT", self.primary_checkpoint)
        self.secondary_checkpoint = os.getenv("SECONDARY_CHECKPOINT", self.secondary_checkpoint)
        self.primary_input_size = int(os.getenv("PRIMARY_INPUT_SIZE", str(self.primary_input_size)))
        self.secondary_input_size = int(os.getenv("SECONDARY_INPUT_SIZE", str(self.secondary_input_size)))
        self.model_warmup_on_startup = os.getenv("MODEL_WARMUP_ON_STARTUP", str(self.model_warmup_on_startup)).lower() == "true"
        self.hf_cache_dir = os.getenv("HF_CACHE_DIR", self.hf_cache_dir)

        self.default_quality = float(os.getenv("DEFAULT_QUALITY", str(self.default_quality)))
        self.default_edge_blur_radius = int(os.getenv("DEFAULT_EDGE_BLUR_RADIUS", str(self.default_edge_blur_radius)))
        self.target_max_width = int(os.getenv("TARGET_MAX_WIDTH", str(self.target_max_width)))
        self.target_max_height = int(os.getenv("TARGET_MAX_HEIGHT", str(self.target_max_height)))
        self.output_format = os.getenv("OUTPUT_FORMAT", self.output_format).upper()
        self.processing_timeout_seconds = float(os.getenv("PROCESSING_TIMEOUT_SECONDS", str(self.processing_timeout_seconds)))

        # Handle allowed origins
        origins_env = os.getenv("ALLOWED_ORIGINS")
        if origins_env and origins_env != "*":
            self.allowed_origins = [o.strip() for o in origins_env.split(",") if o.strip()]

        self.log_level = os.getenv("LOG_LEVEL", self.log_level)
        self.log_format = os.getenv("LOG_FORMAT", self.log_format)

    def validate(self) -> List[str]:
        """Validate configuration and return list of warnings/errors."""
        warnings = []

        if self.max_upload_mb < 1:
            warnings.append("MAX_UPLOAD_MB should be at least 1")

        if self.workers < 1:
            warnings.append("WORKERS should be at least 1")

        if self.workers > 1:
            warnings.append("Each worker loads its own segmentation model; WORKERS > 1 multiplies memory use")

        if self.segmentation_backend not in {"segformer", "rembg"}:
            warnings.append(f"Unknown SEGMENTATION_BACKEND '{self.segmentation_backend}' (expected segformer or rembg)")

        if not 0.0 <= self.default_quality <= 1.0:
            warnings.append("DEFAULT_QUALITY must be between 0 and 1")

        if self.default_edge_blur_radius < 0:
            warnings.append("DEFAULT_EDGE_BLUR_RADIUS should not be negative")

        if self.target_max_width < 1 or self.target_max_height < 1:
            warnings.append("TARGET_MAX_WIDTH and TARGET_MAX_HEIGHT should be at least 1")

        if self.output_format not in {"PNG", "WEBP"}:
            warnings.append(f"OUTPUT_FORMAT '{self.output_format}' is not supported (expected PNG or WEBP)")

        return warnings

# Global configuration instance
config = ServiceConfig()

# Validate configuration on import
if __name__ == "__main__":
    warnings = config.validate()
    if warnings:
        print("Configuration warnings:")
        for warning in warnings:
            print(f"  - {warning}")
    else:
        print("Configuration is valid!")

    print(f"\nCurrent configuration:")
    print(f"  - Segmentation backend: {config.segmentation_backend}")
    print(f"  - Primary checkpoint: {config.primary_checkpoint}")
    print(f"  - Target size: {config.target_max_width}x{config.target_max_height}")
    print(f"  - File size limit: {config.max_upload_mb}MB")
    print(f"  - Workers: {config.workers}")
