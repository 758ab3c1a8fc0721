from pathlib import Path
from setuptools import setup, find_packages

def read_requirements() -> list[str]:
    req_file = Path(__file__).parent / "requirements.txt"
    if not req_file.exists():
        return []
    lines = req_file.read_text(encoding="utf-8").splitlines()
    reqs = []
    for ln in lines:
        ln = ln.strip()
        if not ln or ln.startswith("#"):
            continue
        reqs.append(ln)
    return reqs

setup(
    name="rls-manager",
    version="1.0.0",
    packages=find_packages(include=["rlsmanager", "rlsmanager.*"]),
    include_package_data=True,
    description="Row-level security manager for QuickSight datasets backed by S3, Glue and Redis.",
    long_description=Path("README.md").read_text(encoding="utf-8"),
    long_description_content_type="text/markdown",
    classifiers=[
        "Programming Language :: Python :: 3",
        "Operating System :: OS Independent",
    ],
    python_requires=">=3.10",
    install_requires=read_requirements(),
    extras_require={
        "test": ["pytest>=7.4", "httpx>=0.26"],
    },
)
