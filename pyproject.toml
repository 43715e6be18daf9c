[build-system]
requires = ["hatchling>=1.18"]
build-backend = "hatchling.build"

[project]
name = "sinokb"
version = "1.0.0"
description = "Read and write flash contents on Sinowealth 8051-based HID keyboards through their ISP bootloader"
requires-python = ">=3.10"
keywords = [
    "sinowealth",
    "keyboard",
    "firmware",
    "flash",
    "isp",
    "hid",
    "hidraw",
    "intel-hex",
    "8051",
]
classifiers = [
    "Development Status :: 5 - Production/Stable",
    "Environment :: Console",
    "Intended Audience :: Developers",
    "Intended Audience :: End Users/Desktop",
    "Operating System :: POSIX :: Linux",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System :: Hardware :: Universal Serial Bus (USB) :: Human Interface Device (HID)",
    "Topic :: Software Development :: Embedded Systems",
    "Topic :: Utilities",
]
dependencies = [
    "tqdm>=4.60",
]

[project.optional-dependencies]
test = [
    "pytest>=7.0",
]

[project.scripts]
sinokb = "sinokb.cli:main"

[tool.hatch.build.targets.wheel]
packages = ["sinokb"]

[tool.hatch.build.targets.sdist]
include = [
    "sinokb",
    "tests",
    "pyproject.toml",
]

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
