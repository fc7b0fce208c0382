"""
Run one pipeline job by hand against the configured tenant store.

    python -m app.pipeline.run_job_cli enrich-evidence '{"tenantId": "t1", "evidenceId": "e1", "force": true}'
    python -m app.pipeline.run_job_cli evaluate-signal '{"tenantId": "t1", "evidenceId": "e1"}'
"""
import argparse
import dataclasses
import json

from app.core.logs import configure_logging
from app.core.security import stable_json_dumps
from app.pipeline.jobs import JOB_ENRICH_EVIDENCE, JOB_EVALUATE_SIGNAL, run_job


def main(argv=None):
    parser = argparse.ArgumentParser(description="Run a single enrichment / signal job")
    parser.add_argument("job", choices=[JOB_ENRICH_EVIDENCE, JOB_EVALUATE_SIGNAL])
    parser.add_argument("payload", help="job payload as JSON")
    args = parser.parse_args(argv)

    configure_logging()

    result = run_job(args.job, json.loads(args.payload))
    out = dataclasses.asdict(result) if result is not None else None
    print(f"{args.job}: {stable_json_dumps(out)}")


if __name__ == "__main__":
    main()
