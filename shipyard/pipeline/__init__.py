"""Build pipeline: stages and the executor that runs them."""

from shipyard.pipeline.executor import BuildExecutor, get_executor
from shipyard.pipeline.stages import (
    BuildStage,
    CancellationToken,
    FetchStage,
    InstallStage,
    PublishStage,
    Stage,
    StageContext,
    VerifyStage,
    default_stages,
    run_command,
)

__all__ = [
    "BuildExecutor",
    "get_executor",
    "Stage",
    "StageContext",
    "CancellationToken",
    "FetchStage",
    "InstallStage",
    "BuildStage",
    "VerifyStage",
    "PublishStage",
    "default_stages",
    "run_command",
]
