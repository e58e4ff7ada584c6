"""Core functionality for collection generation and packaging.

This module provides the core components of Mintworks:

- **MintworksConfig**: Configuration management using Pydantic Settings
- **expand_rarity_plan / shuffle_jobs**: Rarity plan expansion and ordering
- **JobStore**: SQLite-backed collection and job persistence
- **BatchProcessor**: Single-flight batch orchestration and job lifecycle
- **build_metadata**: Metaplex metadata generation
- **PackageAssembler / DirectPackageBuilder**: ZIP package assembly

Architecture Overview
---------------------
The core module is layered leaf-first:

1. **Data Layer** (models.py, errors.py, lifecycle.py):
   - Typed records for collections, tiers and jobs
   - Closed ``JobStatus`` enum and its transition table
   - Exception taxonomy shared by every layer

2. **Pure Computation** (rarity.py, metadata.py):
   - Rarity plan expansion, Fisher-Yates shuffle
   - Metadata documents, collection manifest, README, CID substitution

3. **Storage** (job_store.py, artifacts.py):
   - SQLite schema for collections and jobs
   - File-backed images, metadata JSON and packages

4. **Capabilities** (generators.py, imaging.py):
   - Image generation providers (Stability HTTP API, local diffusers)
   - PNG normalisation, palette extraction, content hashing

5. **Orchestration** (processor.py, packaging.py):
   - Batch processing with a process-wide single-flight guard
   - Approve / regenerate / delete transitions
   - Streaming archive construction

Usage Example
-------------
::

    from mintworks.core import BatchProcessor, JobStore, config
    from mintworks.core.artifacts import ArtifactStore
    from mintworks.core.generators import create_generator

    store = JobStore(config.db_path)
    artifacts = ArtifactStore(config.uploads_dir, config.output_dir)
    processor = BatchProcessor(store, artifacts, create_generator(config), config)

    result = processor.process_initial_batch(collection_id)
    print(result.succeeded, result.failed)
"""

from mintworks.core.config import MintworksConfig, config
from mintworks.core.job_store import JobStore
from mintworks.core.metadata import build_metadata
from mintworks.core.packaging import DirectPackageBuilder, PackageAssembler
from mintworks.core.processor import BatchProcessor, SingleFlightGuard
from mintworks.core.rarity import expand_rarity_plan, shuffle_jobs

__all__ = [
    "BatchProcessor",
    "DirectPackageBuilder",
    "JobStore",
    "MintworksConfig",
    "PackageAssembler",
    "SingleFlightGuard",
    "build_metadata",
    "config",
    "expand_rarity_plan",
    "shuffle_jobs",
]
