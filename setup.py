from setuptools import setup


setup(
    name="merge-doctor",
    version="0.1.0",
    description="Local mail-merge core: import messy CSV/Excel data, map template placeholders, render one message per row",
    packages=["merge_doctor"],
    python_requires=">=3.9",
    install_requires=[
        "pandas",
        "chardet",
        "openpyxl",
        "pyyaml",
        "jsonschema",
        "tqdm",
    ],
    extras_require={
        "excel-legacy": ["xlrd"],
        "ods": ["odfpy"],
        "all": ["xlrd", "odfpy"],
        "test": ["pytest"],
    },
    entry_points={
        "console_scripts": [
            "merge-doctor=merge_doctor.cli:main",
        ]
    },
)
