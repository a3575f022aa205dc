"""
node_image — two-stage container build for a native node binary.

Builder stage compiles a release binary with a freshly provisioned Rust
toolchain; runtime stage packages it into a minimal image with a
persisted data volume.
"""

__version__ = "0.1.0"
PIPELINE_NAME = "node_image"
PIPELINE_VERSION = "v1"
SCHEMA_VERSION = "0.1"
