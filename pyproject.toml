[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "flashsale"
version = "0.1.0"
description = "HTTP service that runs hourly flash sales with checkout codes and purchase limits, backed by PostgreSQL and Redis"
requires-python = ">=3.10"
keywords = ["flash sale", "checkout", "http", "redis", "postgresql", "flask"]
classifiers = [
    "Development Status :: 4 - Beta",
    "Environment :: Web Environment",
    "Framework :: Flask",
    "Intended Audience :: Developers",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Internet :: WWW/HTTP :: HTTP Servers",
]
dependencies = [
    "flask",
    "redis",
    "sqlalchemy",
]

[project.optional-dependencies]
test = [
    "pytest",
]

[project.scripts]
flashsale = "flashsale.server:main"

[tool.hatch.build.targets.wheel]
packages = ["flashsale"]

[tool.pytest.ini_options]
addopts = "-ra"
testpaths = ["tests"]
