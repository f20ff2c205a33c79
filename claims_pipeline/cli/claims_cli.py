"""
Command-line interface for the claims pipeline.

Usage:
    claims-pipeline init-db [--schema docker/init-db.sql] [--catalog config/standard_fields.yaml]
    claims-pipeline load-rules --rules config/enrichment_rules.yaml
    claims-pipeline register --input <csv> [--product <product_id>]
    claims-pipeline automap --file-id <file_id> [--threshold 0.8] [--save]
    claims-pipeline save-mapping --file-id <file_id> (--mapping-file <json> | --column HEADER=FIELD ...)
    claims-pipeline save-template --name <name> [--product <product_id>] (--mapping-file <json> | --column HEADER=FIELD ...)
    claims-pipeline templates [--product <product_id>]
    claims-pipeline apply-template --file-id <file_id> --template-id <template_id>
    claims-pipeline ingest --file-id <file_id> --input <csv> [--wait]
    claims-pipeline enrich --file-id <file_id> [--wait]
    claims-pipeline status --file-id <file_id> [--json]
"""

import argparse
import json
import sys
import time
from pathlib import Path

from dotenv import load_dotenv

from claims_pipeline.config import PipelineSettings
from claims_pipeline.core.exceptions import ClaimsPipelineError
from claims_pipeline.core.mapping import FieldCatalogLoader
from claims_pipeline.core.rules import RuleConfigLoader, default_rule_definitions
from claims_pipeline.ingestion import CSVRowSource
from claims_pipeline.observability.logger import get_logger, setup_logger
from claims_pipeline.observability.metrics import start_metrics_server
from claims_pipeline.service import ClaimsPipelineService
from claims_pipeline.warehouse.connection import DatabaseConnectionPool
from claims_pipeline.warehouse.postgres_store import PostgresClaimsStore

logger = get_logger(__name__)

TERMINAL_STATUSES = {"COMPLETED", "ERROR", "NOT_STARTED"}


def build_settings(args) -> PipelineSettings:
    settings = PipelineSettings.from_env(
        db_host=args.db_host,
        db_port=args.db_port,
        db_name=args.db_name,
        db_user=args.db_user,
        db_password=args.db_password,
        batch_size=getattr(args, "batch_size", None),
        rules_config=getattr(args, "rules_config", None),
    )
    setup_logger("claims_pipeline", settings.log_level, settings.log_format)
    return settings


def open_pool(settings: PipelineSettings) -> DatabaseConnectionPool:
    pool = DatabaseConnectionPool.from_settings(settings)
    pool.open()
    return pool


def print_json(payload) -> None:
    print(json.dumps(payload, indent=2, default=str))


def wait_for_job(service: ClaimsPipelineService, file_id: str, job: str, poll: bool, interval: float) -> dict:
    """Block until the file's background job is done, optionally printing progress."""
    status_fn = service.ingestion_status if job == "ingestion" else service.enrichment_status
    if poll:
        while True:
            status = status_fn(file_id)
            if job == "ingestion":
                done, total = status["processed_rows"], status["total_rows"]
            else:
                done = status["enriched_records"] + status["failed_records"]
                total = status["total_records"]
            print(f"  {job}: {status['status']} {done}/{total} ({status['percent_complete']}%)")
            if status["status"] in TERMINAL_STATUSES:
                break
            time.sleep(interval)
    service.wait()
    return status_fn(file_id)


def init_db_command(args):
    """
    Apply the schema and seed the field catalog and default rules.

    Args:
        args: Command-line arguments
    """
    settings = build_settings(args)
    pool = open_pool(settings)
    try:
        schema = Path(args.schema)
        if not schema.exists():
            logger.error(f"Schema file not found: {args.schema}")
            sys.exit(1)
        pool.execute_script(schema.read_text())
        logger.info(f"Applied schema from {schema}")

        store = PostgresClaimsStore(pool)
        if args.catalog:
            fields, variations = FieldCatalogLoader(args.catalog).load()
            store.upsert_standard_fields(fields)
            store.upsert_field_variations(variations)
            logger.info(f"Loaded {len(fields)} fields and {len(variations)} variations from {args.catalog}")

        if not store.load_rule_definitions(active_only=False):
            seeded = store.upsert_rule_definitions(default_rule_definitions())
            logger.info(f"Seeded {seeded} default enrichment rules")

        print("Database initialized.")
    except (ClaimsPipelineError, ValueError) as e:
        print(f"\nError: {e}")
        sys.exit(1)
    finally:
        pool.close()


def load_rules_command(args):
    """Upsert enrichment rule definitions from YAML into the database."""
    settings = build_settings(args)
    pool = open_pool(settings)
    try:
        definitions = RuleConfigLoader(args.rules).load_rule_definitions(active_only=False)
        count = PostgresClaimsStore(pool).upsert_rule_definitions(definitions)

        print(f"\n{'=' * 60}")
        print(f"LOADED {count} ENRICHMENT RULES")
        print(f"{'=' * 60}")
        print(f"{'Rule':<30} {'Priority':>8} {'Processor':<25} {'Active'}")
        print(f"{'-' * 60}")
        for d in definitions:
            print(f"{d.rule_id:<30} {d.priority:>8} {d.processor:<25} {'yes' if d.is_active else 'no'}")
        print()
    except (FileNotFoundError, ValueError) as e:
        print(f"\nError: {e}")
        sys.exit(1)
    finally:
        pool.close()


def register_command(args):
    """Register a CSV file so it can be mapped and ingested."""
    settings = build_settings(args)
    pool = open_pool(settings)
    try:
        source = CSVRowSource(args.input, delimiter=args.delimiter)
        service = ClaimsPipelineService(PostgresClaimsStore(pool), settings)
        with service:
            file = service.create_file(
                Path(args.input).name,
                source.headers,
                row_count=source.row_count,
                product_id=args.product,
            )
        print(f"Registered file {file.file_id} ({source.row_count} rows, {len(source.headers)} columns)")
    except (FileNotFoundError, ClaimsPipelineError) as e:
        print(f"\nError: {e}")
        sys.exit(1)
    finally:
        pool.close()


def automap_command(args):
    """Propose (and optionally save) a header mapping for a file."""
    settings = build_settings(args)
    pool = open_pool(settings)
    try:
        with ClaimsPipelineService(PostgresClaimsStore(pool), settings) as service:
            result = service.auto_map_file(args.file_id, threshold=args.threshold)

            print(f"\n{'=' * 60}")
            print(f"AUTO-MAPPING FOR FILE {args.file_id}")
            print(f"{'=' * 60}")
            for header, field_name in result.mapping.items():
                print(f"  {header:<30} -> {field_name}")
            for header in result.unmapped_headers:
                print(f"  {header:<30} -> (unmapped)")
            print(f"\nExact: {result.exact_matches}  Variation: {result.variation_matches}  "
                  f"Similarity: {result.similarity_matches}  Unmapped: {len(result.unmapped_headers)}")

            if args.save:
                if not result.mapping:
                    print("\nNothing to save.")
                    sys.exit(1)
                mapping = service.save_mapping(args.file_id, result.mapping, actor=args.actor)
                print(f"\nSaved mapping {mapping.mapping_id}")
    except ClaimsPipelineError as e:
        print(f"\nError: {e}")
        sys.exit(1)
    finally:
        pool.close()


def parse_columns(args) -> dict[str, str]:
    if args.mapping_file:
        with open(args.mapping_file) as f:
            columns = json.load(f)
        if not isinstance(columns, dict):
            raise ValueError("Mapping file must hold a JSON object of header -> field name")
        return {str(k): str(v) for k, v in columns.items()}

    columns: dict[str, str] = {}
    for item in args.column or []:
        header, sep, field_name = item.partition("=")
        if not sep or not header or not field_name:
            raise ValueError(f"Expected HEADER=FIELD, got '{item}'")
        columns[header] = field_name
    return columns


def save_mapping_command(args):
    """Save a manual header mapping for a file."""
    settings = build_settings(args)
    pool = open_pool(settings)
    try:
        columns = parse_columns(args)
        with ClaimsPipelineService(PostgresClaimsStore(pool), settings) as service:
            mapping = service.save_mapping(args.file_id, columns, actor=args.actor)
        print(f"Saved mapping {mapping.mapping_id} ({len(mapping.columns)} columns) for file {args.file_id}")
    except (ClaimsPipelineError, ValueError, OSError) as e:
        print(f"\nError: {e}")
        sys.exit(1)
    finally:
        pool.close()


def save_template_command(args):
    """Save a named mapping template for reuse on later files."""
    settings = build_settings(args)
    pool = open_pool(settings)
    try:
        columns = parse_columns(args)
        with ClaimsPipelineService(PostgresClaimsStore(pool), settings) as service:
            template = service.save_mapping_template(
                args.name,
                columns,
                product_id=args.product,
                template_id=args.template_id,
                actor=args.actor,
            )
        print(f"Saved template {template.template_id} '{template.template_name}' ({len(columns)} columns)")
    except (ClaimsPipelineError, ValueError, OSError) as e:
        print(f"\nError: {e}")
        sys.exit(1)
    finally:
        pool.close()


def list_templates_command(args):
    """List active mapping templates."""
    settings = build_settings(args)
    pool = open_pool(settings)
    try:
        with ClaimsPipelineService(PostgresClaimsStore(pool), settings) as service:
            templates = service.list_mapping_templates(args.product)
        if not templates:
            print("No mapping templates")
        for template in templates:
            print(
                f"{template.template_id}  {template.template_name}  "
                f"product={template.product_id or '-'}  columns={len(template.columns)}"
            )
    finally:
        pool.close()


def apply_template_command(args):
    """Save a file's mapping from a template."""
    settings = build_settings(args)
    pool = open_pool(settings)
    try:
        with ClaimsPipelineService(PostgresClaimsStore(pool), settings) as service:
            mapping = service.apply_mapping_template(args.file_id, args.template_id, actor=args.actor)
        print(f"Saved mapping {mapping.mapping_id} ({len(mapping.columns)} columns) for file {args.file_id}")
    except ClaimsPipelineError as e:
        print(f"\nError: {e}")
        sys.exit(1)
    finally:
        pool.close()


def ingest_command(args):
    """Ingest a CSV file into claim records for a mapped file."""
    settings = build_settings(args)
    if settings.metrics_port:
        start_metrics_server(settings.metrics_port)
    pool = open_pool(settings)
    try:
        rows = CSVRowSource(args.input, delimiter=args.delimiter)
        with ClaimsPipelineService(PostgresClaimsStore(pool), settings) as service:
            processing_id = service.start_ingestion(args.file_id, rows, actor=args.actor)
            print(f"Started ingestion {processing_id}")
            status = wait_for_job(service, args.file_id, "ingestion", args.wait, args.poll_interval)

        print(f"\n{'=' * 60}")
        print("INGESTION COMPLETE" if status["status"] == "COMPLETED" else "INGESTION FAILED")
        print(f"{'=' * 60}")
        print(f"Rows ingested: {status['processed_rows']}/{status['total_rows']}")
        if status.get("error_details"):
            print(f"Error: {status['error_details'].get('message')}")
        print()
        if status["status"] != "COMPLETED":
            sys.exit(1)
    except (FileNotFoundError, ClaimsPipelineError) as e:
        print(f"\nError: {e}")
        sys.exit(1)
    finally:
        pool.close()


def enrich_command(args):
    """Run enrichment over every claim record of a file."""
    settings = build_settings(args)
    if settings.metrics_port:
        start_metrics_server(settings.metrics_port)
    pool = open_pool(settings)
    try:
        with ClaimsPipelineService(PostgresClaimsStore(pool), settings) as service:
            run_id = service.start_enrichment(args.file_id, actor=args.actor)
            print(f"Started enrichment run {run_id}")
            status = wait_for_job(service, args.file_id, "enrichment", args.wait, args.poll_interval)

        print(f"\n{'=' * 60}")
        print(f"ENRICHMENT {status['status']}")
        print(f"{'=' * 60}")
        print(f"Enriched: {status['enriched_records']}  Failed: {status['failed_records']}  "
              f"Total: {status['total_records']}")
        print(f"\n{'Rule':<30} {'Attempted':>10} {'Succeeded':>10} {'Rate':>8}")
        print(f"{'-' * 60}")
        for s in status["rule_stats"]:
            print(f"{s['rule_id']:<30} {s['attempted']:>10} {s['succeeded']:>10} {s['success_rate']:>7}%")
        print()
        if status["status"] != "COMPLETED":
            sys.exit(1)
    except ClaimsPipelineError as e:
        print(f"\nError: {e}")
        sys.exit(1)
    finally:
        pool.close()


def status_command(args):
    """Show file, ingestion and enrichment status."""
    settings = build_settings(args)
    pool = open_pool(settings)
    try:
        with ClaimsPipelineService(PostgresClaimsStore(pool), settings) as service:
            file = service.get_file(args.file_id)
            report = {
                "file": file.model_dump(mode="json"),
                "ingestion": service.ingestion_status(args.file_id),
                "enrichment": service.enrichment_status(args.file_id),
                "claims": service.claims_summary(args.file_id),
            }

        if args.json:
            print_json(report)
            return

        print(f"\n{'=' * 60}")
        print(f"FILE {file.file_id} ({file.original_filename})")
        print(f"{'=' * 60}")
        print(f"Status: {file.status.value} / {file.processing_stage.value}")
        ingestion = report["ingestion"]
        print(f"Ingestion: {ingestion['status']} {ingestion['processed_rows']}/{ingestion['total_rows']}")
        enrichment = report["enrichment"]
        print(f"Enrichment: {enrichment['status']} enriched={enrichment['enriched_records']} "
              f"failed={enrichment['failed_records']} total={enrichment['total_records']}")
        print(f"Claim records: {report['claims']['total_records']}")
        for group, count in report["claims"]["enriched_fields"].items():
            print(f"  {group}: {count}")
        print()
    except ClaimsPipelineError as e:
        print(f"\nError: {e}")
        sys.exit(1)
    finally:
        pool.close()


def add_db_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--db-host", help="Database host (default: env DB_HOST or localhost)")
    parser.add_argument("--db-port", type=int, help="Database port (default: env DB_PORT or 5432)")
    parser.add_argument("--db-name", help="Database name (default: env DB_NAME or claims)")
    parser.add_argument("--db-user", help="Database user (default: env DB_USER or pipeline)")
    parser.add_argument("--db-password", help="Database password (default: env DB_PASSWORD)")


def main():
    """Main CLI entry point."""
    load_dotenv()

    parser = argparse.ArgumentParser(
        description="Claims ingestion and enrichment pipeline",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Create tables and load the field catalog
  claims-pipeline init-db --catalog config/standard_fields.yaml

  # Register, map and ingest a CSV file
  claims-pipeline register --input data/claims.csv --product pbm
  claims-pipeline automap --file-id <file_id> --save
  claims-pipeline ingest --file-id <file_id> --input data/claims.csv --wait

  # Enrich and inspect
  claims-pipeline enrich --file-id <file_id> --wait
  claims-pipeline status --file-id <file_id> --json
        """
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    init_parser = subparsers.add_parser("init-db", help="Create tables and seed catalog/rules")
    init_parser.add_argument("--schema", default="docker/init-db.sql", help="DDL script")
    init_parser.add_argument("--catalog", help="Field catalog YAML to load")
    init_parser.set_defaults(func=init_db_command)

    rules_parser = subparsers.add_parser("load-rules", help="Load enrichment rules from YAML")
    rules_parser.add_argument("--rules", default="config/enrichment_rules.yaml", help="Rules YAML")
    rules_parser.set_defaults(func=load_rules_command)

    register_parser = subparsers.add_parser("register", help="Register a CSV file")
    register_parser.add_argument("--input", required=True, help="CSV file")
    register_parser.add_argument("--product", help="Product id of the field catalog")
    register_parser.add_argument("--delimiter", default=",", help="CSV delimiter")
    register_parser.set_defaults(func=register_command)

    automap_parser = subparsers.add_parser("automap", help="Propose a header mapping")
    automap_parser.add_argument("--file-id", required=True)
    automap_parser.add_argument("--threshold", type=float, help="Similarity threshold (0-1)")
    automap_parser.add_argument("--save", action="store_true", help="Save the proposed mapping")
    automap_parser.set_defaults(func=automap_command)

    mapping_parser = subparsers.add_parser("save-mapping", help="Save a manual header mapping")
    mapping_parser.add_argument("--file-id", required=True)
    group = mapping_parser.add_mutually_exclusive_group(required=True)
    group.add_argument("--mapping-file", help="JSON object of header -> field name")
    group.add_argument("--column", action="append", help="HEADER=FIELD (repeatable)")
    mapping_parser.set_defaults(func=save_mapping_command)

    template_parser = subparsers.add_parser("save-template", help="Save a reusable mapping template")
    template_parser.add_argument("--name", required=True, help="Template name")
    template_parser.add_argument("--product", help="Product id of the field catalog")
    template_parser.add_argument("--template-id", help="Replace this existing template")
    group = template_parser.add_mutually_exclusive_group(required=True)
    group.add_argument("--mapping-file", help="JSON object of header -> field name")
    group.add_argument("--column", action="append", help="HEADER=FIELD (repeatable)")
    template_parser.set_defaults(func=save_template_command)

    templates_parser = subparsers.add_parser("templates", help="List mapping templates")
    templates_parser.add_argument("--product", help="Only this product and shared templates")
    templates_parser.set_defaults(func=list_templates_command)

    apply_parser = subparsers.add_parser("apply-template", help="Map a file with a saved template")
    apply_parser.add_argument("--file-id", required=True)
    apply_parser.add_argument("--template-id", required=True)
    apply_parser.set_defaults(func=apply_template_command)

    ingest_parser = subparsers.add_parser("ingest", help="Ingest a CSV file")
    ingest_parser.add_argument("--file-id", required=True)
    ingest_parser.add_argument("--input", required=True, help="CSV file")
    ingest_parser.add_argument("--delimiter", default=",", help="CSV delimiter")
    ingest_parser.add_argument("--batch-size", type=int, help="Rows per transaction")
    ingest_parser.set_defaults(func=ingest_command)

    enrich_parser = subparsers.add_parser("enrich", help="Run enrichment rules")
    enrich_parser.add_argument("--file-id", required=True)
    enrich_parser.add_argument("--rules-config", help="Read rules from YAML instead of the database")
    enrich_parser.add_argument("--batch-size", type=int, help="Records per transaction")
    enrich_parser.set_defaults(func=enrich_command)

    status_parser = subparsers.add_parser("status", help="Show file status")
    status_parser.add_argument("--file-id", required=True)
    status_parser.add_argument("--json", action="store_true", help="Print JSON")
    status_parser.set_defaults(func=status_command)

    for sub in (ingest_parser, enrich_parser):
        sub.add_argument("--wait", action="store_true", help="Print progress while the job runs")
        sub.add_argument("--poll-interval", type=float, default=1.0, help="Seconds between polls")

    for sub in subparsers.choices.values():
        add_db_arguments(sub)
        sub.add_argument("--actor", default="cli", help="Actor recorded in the audit trail")

    args = parser.parse_args()

    if not args.command:
        parser.print_help()
        sys.exit(1)

    args.func(args)


if __name__ == "__main__":
    main()
