[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "forohtoo"
version = "0.1.0"
description = "Wallet monitoring service library: a wallet registry, a transaction store, transaction events and a WSGI JSON API with server-sent event streams."
requires-python = ">=3.10"
keywords = ["wallet", "transactions", "monitoring", "server-sent-events", "wsgi", "payments"]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Intended Audience :: Developers",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Office/Business :: Financial",
    "Topic :: Internet :: WWW/HTTP :: WSGI :: Application",
]
dependencies = [
    "sqlalchemy>=2.0",
    "werkzeug>=3.0",
]

[project.optional-dependencies]
test = [
    "pytest>=7.4",
]

[tool.hatch.build.targets.wheel]
packages = ["forohtoo"]

[tool.pytest.ini_options]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.ruff.lint]
select = ["E", "F", "W", "I", "B", "UP"]

[tool.mypy]
python_version = "3.10"
warn_unused_ignores = true
warn_redundant_casts = true
