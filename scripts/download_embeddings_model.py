#!/usr/bin/env python3
"""
Download the HuggingFace embedding model used for ingestion.
Fetches the configured model into HF_HOME so ingestion can run offline,
and checks that its output dimension matches EMBEDDING_DIM.
"""

import sys
from pathlib import Path

# Add the src directory to the path so we can import the modules
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from il2cpp_ingest.core.config import settings
from il2cpp_ingest.core.logging import logger
from il2cpp_ingest.services.embedder import EmbedderService


def download_model() -> bool:
    """Load the configured model once and verify its embedding size."""
    model_name = settings.HF_EMBEDDING_MODEL
    models_dir = Path(settings.HF_HOME)
    models_dir.mkdir(parents=True, exist_ok=True)

    logger.info(f"Downloading embedding model: {model_name}")
    logger.info(f"Model will be saved to: {models_dir}")

    try:
        embedder = EmbedderService(model_name)
        embedding = embedder.embed_batch(["public class PlayerController : MonoBehaviour"])[0]
    except Exception as e:
        logger.error(f"Failed to download model {model_name}: {e}")
        return False

    logger.info(f"Embedding dimension: {len(embedding)}")
    if len(embedding) != settings.EMBEDDING_DIM:
        logger.error(
            f"Model {model_name} produces {len(embedding)}-dim vectors, "
            f"EMBEDDING_DIM is {settings.EMBEDDING_DIM}"
        )
        return False

    logger.info(f"Total model size: ~{get_model_size(models_dir)} MB")
    return True


def get_model_size(directory: Path) -> float:
    """Calculate the total size of the model directory in MB."""
    total_size = 0
    for file_path in directory.rglob('*'):
        if file_path.is_file():
            total_size += file_path.stat().st_size

    return round(total_size / (1024 * 1024), 2)


if __name__ == "__main__":
    success = download_model()
    if success:
        print("✅ Model download completed successfully!")
        sys.exit(0)
    else:
        print("❌ Model download failed!")
        sys.exit(1)
