# compatgate_workflow.py
# Merge gate for a Rust node repository: one binary build feeding the
# compatibility suites, schema checks that never need the binary, and tests.
#
# Runners must advertise the labels used here, e.g.
#   COMPATGATE_RUNNERS="amazonlinux:distro=amazonlinux,queue=default,os=linux*4;mac:os=macos*1"
from __future__ import annotations

from compatgate import Job, compat_step, drift_step, job, matrix, sh, use, wf

AGENT = {"distro": "amazonlinux", "queue": "default"}
NOT_RELEASE = "!master !beta !stable"
PIP = "pip3 install --user -r requirements.txt"

NEXTEST = [
    ("linux", "", {"os": "linux"}),
    ("linux-nightly", "--features nightly,test_features", {"os": "linux"}),
    (
        "macos",
        "--exclude integration-tests --exclude node-runtime --exclude runtime-params-estimator "
        "--exclude near-network --exclude estimator-warehouse",
        {"os": "macos"},
    ),
]


def _neard_suite(name: str, script: str, branches: str, extra_env: str = "") -> Job:
    return job(
        name,
        sh("Install requirements", PIP),
        sh("Run", f'chmod +x neard && {extra_env}CURRENT_NEARD="$PWD/neard" python3 {script}'),
        inputs=[use("neard", "pytest/neard")],
        branches=branches,
        labels=AGENT,
        cwd="pytest",
        timeout=90 * 60,
    )


def workflow():
    return wf(
        job(
            "build binary",
            sh("Build neard", "cargo build --locked --profile quick-release -p neard --bin neard"),
            outputs=["neard=target/quick-release/neard"],
            labels=AGENT,
            env={"RUST_BACKTRACE": "short"},
        ),

        # Proto files against the point this branch left master, not master's tip
        job(
            "protobuf backward compatibility",
            compat_step("buf breaking", ["**/*.proto"], against="merge-base", target_ref="origin/master", fetch="origin"),
            labels=AGENT,
        ),

        job(
            "rpc errors schema",
            drift_step(
                "RPC errors schema",
                generate="cargo check -p near-jsonrpc --features dump_errors_schema",
                generated="target/rpc_errors_schema.json",
                baseline="chain/jsonrpc/res/rpc_errors_schema.json",
                regenerate="./chain/jsonrpc/build_errors_schema.sh",
            ),
            branches="!master",
            labels=AGENT,
        ),

        job(
            "sanity checks",
            sh("Install requirements", f"cd pytest && {PIP}"),
            sh("Build nightly neard", "cargo build --profile quick-release -p neard --bin neard --features nightly"),
            sh("Spin up cluster", "NEAR_ROOT=target/quick-release python3 pytest/tests/sanity/spin_up_cluster.py"),
            branches="!master",
            labels=AGENT,
            timeout=90 * 60,
        ),

        job(
            "style",
            sh("Check nightly", "python3 scripts/check_nightly.py"),
            sh("Check pytests", "python3 scripts/check_pytests.py"),
            sh("Nightly feature flags", "python3 scripts/fix_nightly_feature_flags.py"),
            sh("Formatting", "./scripts/formatting --check"),
            labels=AGENT,
        ),

        _neard_suite("backward compatible", "tests/sanity/backward_compatible.py", NOT_RELEASE),
        _neard_suite("db migration", "tests/sanity/db_migration.py", NOT_RELEASE, extra_env='NEAR_ROOT="$PWD" '),
        _neard_suite("upgradable", "tests/sanity/upgradable.py", "!master"),

        job(
            "genesis changes",
            sh("Install requirements", f"cd pytest && {PIP}"),
            sh("Check genesis", 'chmod +x target/quick-release/neard && python3 scripts/state/update_res.py check'),
            inputs=[use("neard", "target/quick-release/neard")],
            labels=AGENT,
        ),

        matrix("nextest", NEXTEST).jobs(
            lambda v: job(
                f"cargo nextest ({v[0]})",
                sh("nextest", f"cargo nextest run --locked --workspace -p '*' --cargo-profile quick-release --profile ci {v[1]}".rstrip()),
                labels=v[2],
                env={"RUST_BACKTRACE": "short"},
                timeout=90 * 60,
            )
        ),
    )
