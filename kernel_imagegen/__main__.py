"""Allow running as ``python -m kernel_imagegen``."""

from kernel_imagegen.cli import app

app(prog_name="kernelgen")
