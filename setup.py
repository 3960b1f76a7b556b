"""Setup configuration for the SERP rank pipeline."""

from setuptools import setup

setup(
    name="rank_pipeline",
    version="1.0.0",
    description="SERP Rank Tracker - Preflight / Takeoff / Landing pipeline for DataForSEO tasks",
    author="Mark Lerner",
    py_modules=["rank_pipeline", "keyword_templates", "audit_log"],
    python_requires=">=3.9",
    install_requires=[],
    extras_require={
        "test": [
            "pytest>=7.4.3",
            "pytest-cov>=4.1.0",
            "pytest-mock>=3.12.0",
            "pytest-xdist>=3.5.0",
            "pytest-timeout>=2.2.0",
        ],
    },
    entry_points={
        "console_scripts": [
            "rank-pipeline=rank_pipeline:main",
        ],
    },
)
