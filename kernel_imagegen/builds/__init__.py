"""Build orchestration module.

This module handles:
- Tag resolution from build targets and content hashes
- Content hashing of the build directory via git
- Rebuild gating against the registry
- Docker build execution with logging
- Dependency-ordered build and push of target pairs
"""
