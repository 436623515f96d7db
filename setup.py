"""
Setup script for sku_optimizer package.
"""

from setuptools import setup, find_packages

setup(
    name="sku-pricing-optimizer",
    version="1.0.0",
    description="Moteur de décision prix par SKU : modes, diagnostics, garde-fous et priorisation",
    author="PricEye Team",
    packages=find_packages(exclude=["scripts", "scripts.*"]),
    install_requires=[
        "supabase>=2.0.0",
        "pandas>=2.0.0",
        "numpy>=1.24.0",
        "python-dotenv>=1.0.0",
        "pytz>=2023.3",
        "python-dateutil>=2.8.0",
        "PyYAML>=6.0",
    ],
    extras_require={
        "test": [
            "pytest>=7.0.0",
        ],
    },
    python_requires=">=3.9",
)
