[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "priorityproxy"
version = "0.1.0"
description = "Priority-aware, preempting HTTP proxy for OpenAI-compatible APIs, with per-request metrics"
requires-python = ">=3.10"
dependencies = [
    "httpx",
]
keywords = ["proxy", "openai", "priority-queue", "preemption", "llm", "metrics"]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Environment :: Console",
    "Intended Audience :: Developers",
    "Intended Audience :: System Administrators",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Internet :: Proxy Servers",
    "Typing :: Typed",
]

[project.optional-dependencies]
test = [
    "pytest",
    "respx",
]

[project.scripts]
priorityproxy = "priorityproxy.cli:main"

[tool.hatch.build.targets.wheel]
packages = ["priorityproxy"]

[tool.pytest.ini_options]
addopts = "-ra"
testpaths = ["tests"]

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.ruff.lint]
select = ["E", "F", "W", "I", "B", "UP"]

[tool.mypy]
python_version = "3.10"
warn_unused_ignores = true
warn_redundant_casts = true
