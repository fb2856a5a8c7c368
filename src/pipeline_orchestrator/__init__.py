"""Pipeline Orchestrator - run staged CI pipelines as local subprocesses."""

__version__ = "0.1.0"
