"""Tree entity, data loading, configuration and workflow orchestration."""
