"""
Command-line interface entry points for pipeline scripts.

Installed commands (see pyproject.toml [project.scripts]):

    gcd-street-features     # Step 00
    gcd-assemble            # Step 01
    gcd-index               # Step 02
    gcd-analysis-dataset    # Step 03
    gcd-ols / gcd-iv / gcd-ipw
    gcd-validation          # Step 07
    gcd-run-all             # Full pipeline

Each command runs the matching file in scripts/ with the current
interpreter, from the project root.
"""

import subprocess
import sys

from garden_city.paths import get_project_root


PIPELINE = [
    ("00_extract_street_features.py", "Extracting street features"),
    ("01_assemble_neighborhoods.py", "Assembling neighborhoods"),
    ("02_build_gcd_index.py", "Building GCD index"),
    ("03_build_analysis_dataset.py", "Building analysis dataset"),
    ("04_estimate_ols.py", "Estimating OLS battery"),
    ("05_estimate_iv.py", "Estimating IV battery"),
    ("06_estimate_ipw.py", "Estimating IPW battery"),
    ("07_validation_samples.py", "Building validation samples"),
]


def _run_script(script_name: str, args: list[str] | None = None) -> int:
    """Run a pipeline script and return its exit code."""
    script_path = get_project_root() / "scripts" / script_name

    if not script_path.exists():
        print(f"Error: Script not found: {script_path}", file=sys.stderr)
        return 1

    cmd = [sys.executable, str(script_path)] + list(args or [])
    result = subprocess.run(cmd, cwd=get_project_root())
    return result.returncode


def run_00_street_features() -> int:
    """Run step 00; extra arguments (state codes, --force) are passed through."""
    return _run_script("00_extract_street_features.py", sys.argv[1:])


def run_01_assemble() -> int:
    return _run_script("01_assemble_neighborhoods.py")


def run_02_index() -> int:
    return _run_script("02_build_gcd_index.py")


def run_03_analysis_dataset() -> int:
    return _run_script("03_build_analysis_dataset.py")


def run_04_ols() -> int:
    return _run_script("04_estimate_ols.py")


def run_05_iv() -> int:
    return _run_script("05_estimate_iv.py")


def run_06_ipw() -> int:
    return _run_script("06_estimate_ipw.py")


def run_07_validation() -> int:
    return _run_script("07_validation_samples.py")


def run_all() -> int:
    """
    Run the full pipeline in order.

    Returns the first non-zero exit code, or 0 if all succeed.
    """
    print("=" * 60)
    print("Garden City Design - Full Pipeline")
    print("=" * 60)

    for script_name, description in PIPELINE:
        print(f"\n[{description}]")
        print("-" * 40)

        exit_code = _run_script(script_name)
        if exit_code != 0:
            print(f"\nPipeline failed at: {script_name}")
            return exit_code

    print("\n" + "=" * 60)
    print("Full pipeline completed successfully")
    print("=" * 60)
    return 0


if __name__ == "__main__":
    sys.exit(run_all())
