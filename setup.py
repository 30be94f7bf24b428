import setuptools

with open("README.md", "r", encoding="utf-8") as fh:
    long_description = fh.read()

setuptools.setup(
    name='modpileup_tools',
    version='0.0.1',
    author='Irene Unterman',
    author_email='irene.guberman@mail.huji.ac.il',
    description='Pileup of modBAM base modification calls into bedMethyl',
    long_description=long_description,
    long_description_content_type="text/markdown",
    url='https://github.com/methylgrammarlab/modpileup-tools',
    license='MIT',
    packages=['modpileup_tools'],
    python_requires='>=3.9',
    install_requires=['numpy', 'pandas', 'pysam', "Click", "tqdm"],
    extras_require={"test": ["pytest"]},
    include_package_data=True,
    entry_points={
    "console_scripts":[
    "modpileup = modpileup_tools.modpileup:main",
    ]
    },
)
