[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "rtpkit"
version = "0.1.0"
description = "RTP media helpers: jitter buffer, sample builder, Ogg/Opus reader and A/V synchronizer"
requires-python = ">=3.10"
dependencies = []
keywords = ["rtp", "rtcp", "webrtc", "opus", "ogg", "jitter-buffer", "av-sync"]
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
    "Topic :: Communications :: Conferencing",
    "Topic :: Multimedia :: Sound/Audio",
    "Topic :: Multimedia :: Video",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["rtpkit"]

[tool.pytest.ini_options]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.mypy]
python_version = "3.10"
warn_unused_ignores = true
