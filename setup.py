from setuptools import setup, find_packages

setup(
    name="aslam-gtsam",
    version="0.1.0",
    description="Keyframe-based SLAM back-end on GTSAM",
    packages=find_packages("src"),
    package_dir={"": "src"},
    python_requires=">=3.8",
    install_requires=[
        "gtsam",
        "numpy",
        "scipy",
        "attrs",
        "PyYAML",
        "matplotlib",
    ],
    extras_require={"test": ["pytest"]},
)
