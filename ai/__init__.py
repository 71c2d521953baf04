"""AI module: provider adapters, stream normalization and PRD prompts."""
