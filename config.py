"""
PDSR Configuration Module
Loads settings from .env file and defines pipeline constants.
"""

import os
from pathlib import Path
from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()

# =============================================================================
# API Keys
# =============================================================================
GOOGLE_API_KEY = os.getenv("GOOGLE_API_KEY", "")

# =============================================================================
# Model Configuration
# =============================================================================
LOGIC_MODEL = os.getenv("LOGIC_MODEL", "gemini-3-pro-preview")  # Perception, judging, physics code
VISION_MODEL = os.getenv("VISION_MODEL", "gemini-3-pro-image-preview")  # Restoration and refinement
MAX_OUTPUT_TOKENS = int(os.getenv("MAX_OUTPUT_TOKENS", "16384"))
REQUEST_TIMEOUT = int(os.getenv("REQUEST_TIMEOUT", "180"))  # Seconds per transform call

# =============================================================================
# Resilience
# =============================================================================
TRANSFORM_RETRIES = int(os.getenv("TRANSFORM_RETRIES", "3"))
RETRY_INITIAL_DELAY = float(os.getenv("RETRY_INITIAL_DELAY", "1.0"))  # Seconds, doubles per retry

# =============================================================================
# Pipeline Parameters
# =============================================================================
PERCEPTION_MAX_DIMENSION = int(os.getenv("PERCEPTION_MAX_DIMENSION", "1024"))  # Long edge sent to perception
SIMILARITY_THRESHOLD = float(os.getenv("SIMILARITY_THRESHOLD", "0.45"))  # Minimum SSIM per region
MAX_CRITICAL_REGIONS = int(os.getenv("MAX_CRITICAL_REGIONS", "10"))  # Regions re-validated per pass
MAX_REGION_AREA_RATIO = float(os.getenv("MAX_REGION_AREA_RATIO", "0.6"))  # Larger regions are not judged as patches
MAX_REFINEMENT_PASSES = int(os.getenv("MAX_REFINEMENT_PASSES", "2"))  # Per region

# =============================================================================
# Paths
# =============================================================================
BASE_DIR = Path(__file__).parent
OUTPUT_DIR = Path(os.getenv("PDSR_OUTPUT_DIR", str(BASE_DIR / "output")))


# =============================================================================
# Validation
# =============================================================================
def validate_config() -> dict:
    """Validate configuration and return status."""
    issues = []

    if not GOOGLE_API_KEY:
        issues.append("GOOGLE_API_KEY is not set in .env file")

    if not 0.0 <= SIMILARITY_THRESHOLD <= 1.0:
        issues.append(f"SIMILARITY_THRESHOLD must be within [0, 1], got {SIMILARITY_THRESHOLD}")

    if not 0.0 < MAX_REGION_AREA_RATIO <= 1.0:
        issues.append(f"MAX_REGION_AREA_RATIO must be within (0, 1], got {MAX_REGION_AREA_RATIO}")

    if MAX_REFINEMENT_PASSES < 0:
        issues.append("MAX_REFINEMENT_PASSES cannot be negative")

    return {
        "valid": len(issues) == 0,
        "issues": issues,
        "config": {
            "logic_model": LOGIC_MODEL,
            "vision_model": VISION_MODEL,
            "transform_retries": TRANSFORM_RETRIES,
            "similarity_threshold": SIMILARITY_THRESHOLD,
            "max_critical_regions": MAX_CRITICAL_REGIONS,
            "max_refinement_passes": MAX_REFINEMENT_PASSES,
            "perception_max_dimension": PERCEPTION_MAX_DIMENSION,
        }
    }
