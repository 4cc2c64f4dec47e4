"""Tool-call protocol: typed parameter models for every gateway tool."""
