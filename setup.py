from pathlib import Path

from setuptools import find_packages, setup

here = Path(__file__).parent
readme = (here / "README.md").read_text(encoding="utf-8") if (here / "README.md").exists() else ""

setup(
    name="hostwatch",
    version="0.1.0",
    description="Host telemetry agent with local time-series storage and a secret vault",
    long_description=readme,
    long_description_content_type="text/markdown",
    packages=find_packages(where="src"),
    package_dir={"": "src"},
    python_requires=">=3.10",
    install_requires=[
        "pydantic>=2.0",
        "PyYAML>=6.0",
        "psutil>=5.9",
        "cryptography>=41.0",
    ],
    extras_require={
        "dev": ["pytest>=7.4"],
    },
    entry_points={
        "console_scripts": [
            "hostwatch=hostwatch.app:main",
        ]
    },
    include_package_data=True,
)
