[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "ckptrelay"
version = "0.1.0"
description = "Relays sealed checkpoints to Bitcoin as chained OP_RETURN transactions, with replace-by-fee resubmission."
requires-python = ">=3.10"
dependencies = []
keywords = ["bitcoin", "checkpoint", "op_return", "rbf", "relayer", "fee-estimation"]
classifiers = [
    "Development Status :: 4 - Beta",
    "Intended Audience :: Developers",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Internet",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["ckptrelay"]

[tool.pytest.ini_options]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.mypy]
python_version = "3.10"
warn_unused_ignores = true
