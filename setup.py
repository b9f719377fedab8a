#!/usr/bin/env python


from setuptools import setup, find_packages


setup(
    name="cnv_caller",
    version="1.0.0",
    description="Pedigree-aware, multi-sample and somatic copy-number variant calling from coverage and B-allele data",
    package_dir={"": "src"},
    packages=find_packages("src"),
    entry_points={
        "console_scripts": [
            "cnv-caller=cnv_caller.command_line:main",
            "cnv_caller=cnv_caller.command_line:main"
        ]
    },
    python_requires=">3.8",
    install_requires=[
        "numpy",
        "scipy",
        "pandas",
        "tqdm",
        "psutil",
        "pysam>=0.23.3"
    ],
    extras_require={
        "tests": ["pytest", "pytest-cov"]
    },
    include_package_data=True,
    zip_safe=False
)
