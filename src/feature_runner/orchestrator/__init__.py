from .service import Orchestrator, ProviderFactory, build_orchestrator

__all__ = ["Orchestrator", "ProviderFactory", "build_orchestrator"]
