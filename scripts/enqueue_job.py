# 命令行入队一条同步任务（运维补跑 / 新店铺上线）

import argparse
import json
import sys

from sync_engine.core.enums import JobType, Platform
from sync_engine.core.logging import configure_logging
from sync_engine.db.session import SessionLocal
from sync_engine.services.job_queue import JobQueue
from sync_engine.utils.shop_id import normalize_shop_id


def main(argv=None) -> int:
    configure_logging()
    parser = argparse.ArgumentParser(description="Enqueue a sync job")
    parser.add_argument("shop", help="shop id or *.myshopify.com domain")
    parser.add_argument("platform", help="SHOPIFY | META | COMMERCE | ADS")
    parser.add_argument("--type", dest="job_type", default=JobType.INCREMENTAL.value)
    parser.add_argument("--follow-up-historical", action="store_true",
                        help="INCREMENTAL 成功后自动补一条 HISTORICAL_INIT")
    args = parser.parse_args(argv)

    try:
        shop_id = normalize_shop_id(args.shop)
        platform = Platform.parse(args.platform)
        job_type = JobType.parse(args.job_type)
    except ValueError as e:
        parser.error(str(e))

    metadata = {"follow_up_historical": True} if args.follow_up_historical else None
    job = JobQueue(SessionLocal).enqueue(shop_id, platform, job_type, metadata)
    if job is None:
        print(json.dumps({"job": None, "duplicate": True}))
        return 0
    print(json.dumps({"job_id": job.id, "shop_id": shop_id, "platform": platform.value, "job_type": job_type.value}))
    return 0


if __name__ == "__main__":
    sys.exit(main())


# 运行
# export $(grep -v '^#' .env | xargs)
# PYTHONPATH=backend python scripts/enqueue_job.py acme.myshopify.com SHOPIFY --type HISTORICAL_INIT
