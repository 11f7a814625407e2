# Copyright (c) 2024 Stagehand Contributors
# MIT License

"""Command-line interface: ``stagehand run``, ``stagehand vault`` and ``stagehand inventory``."""
