from pathlib import Path
from setuptools import setup, find_packages


def read_readme() -> str:
    readme_path = Path(__file__).resolve().parent / "README.md"
    return readme_path.read_text(encoding="utf-8") if readme_path.exists() else ""


setup(
    name="ghostlog",
    version="8.1.0",
    packages=find_packages(include=["ghostlog", "ghostlog.*"]),
    install_requires=[
        "cryptography>=41.0.0",
        "httpx>=0.24.0",
        "numpy>=1.24.0",
    ],
    extras_require={
        "test": ["pytest>=7.0"],
    },
    python_requires=">=3.10",
    author="F1xGOD",
    author_email="f1xgodim@gmail.com",
    description="Carry files through document filters as synthetic crash reports",
    long_description=read_readme(),
    long_description_content_type="text/markdown",
)
