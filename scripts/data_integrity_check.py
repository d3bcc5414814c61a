import asyncio
import os
import sys
from sqlalchemy import select, func, and_

sys.path.append(os.getcwd())

from reqflow.database import AsyncSessionLocal
from reqflow.models import Project, Requisition, RequisitionItem, RequisitionTransition


async def main() -> int:
    problems = 0
    async with AsyncSessionLocal() as db:
        print("Starting Database Integrity Check...")
        print("=" * 60)

        # 1. Requisition and project in the same organization
        print("\n[1] Checking requisition/project organization consistency...")
        stmt = (
            select(Requisition.requisition_number, Requisition.org_id, Project.org_id)
            .join(Project, Requisition.project_id == Project.id)
            .where(Requisition.org_id != Project.org_id)
        )
        rows = (await db.execute(stmt)).all()
        if rows:
            problems += len(rows)
            print(f"❌ Found {len(rows)} requisitions whose project belongs to another organization:")
            for number, req_org, project_org in rows:
                print(f"   - {number}: requisition org {req_org}, project org {project_org}")
        else:
            print("✅ Every requisition shares its project's organization.")

        # 2. Items in the same organization as their requisition
        print("\n[2] Checking item/requisition organization consistency...")
        stmt = (
            select(Requisition.requisition_number, func.count(RequisitionItem.id))
            .join(Requisition, RequisitionItem.requisition_id == Requisition.id)
            .where(RequisitionItem.org_id != Requisition.org_id)
            .group_by(Requisition.requisition_number)
        )
        rows = (await db.execute(stmt)).all()
        if rows:
            problems += len(rows)
            print(f"❌ Found {len(rows)} requisitions with items from another organization:")
            for number, count in rows:
                print(f"   - {number}: {count} items")
        else:
            print("✅ Every item shares its requisition's organization.")

        # 3. spent_amount within budget
        print("\n[3] Checking spent_amount <= budget for limited projects...")
        stmt = select(Project).where(
            and_(Project.budget != None, Project.budget > 0, Project.spent_amount > Project.budget)  # noqa: E711
        )
        overspent = (await db.execute(stmt)).scalars().all()
        if overspent:
            problems += len(overspent)
            print(f"❌ Found {len(overspent)} projects spent beyond budget:")
            for p in overspent:
                print(f"   - {p.name} (ID: {p.id}): spent {p.spent_amount} of {p.budget}")
        else:
            print("✅ No project is spent beyond its budget.")

        # 4. Submitted requisitions whose total matches their items
        print("\n[4] Checking totals of submitted requisitions...")
        item_totals = (
            select(
                RequisitionItem.requisition_id.label("requisition_id"),
                func.sum(RequisitionItem.line_total).label("items_total"),
            )
            .group_by(RequisitionItem.requisition_id)
            .subquery()
        )
        stmt = (
            select(Requisition.requisition_number, Requisition.total_amount, item_totals.c.items_total)
            .join(item_totals, item_totals.c.requisition_id == Requisition.id)
            .where(
                Requisition.status != "draft",
                Requisition.total_amount != item_totals.c.items_total,
            )
        )
        rows = (await db.execute(stmt)).all()
        if rows:
            problems += len(rows)
            print(f"❌ Found {len(rows)} submitted requisitions whose total differs from their items:")
            for number, total, items_total in rows:
                print(f"   - {number}: total {total}, items {items_total}")
        else:
            print("✅ Submitted totals match their items.")

        # 5. Notification fan-out that gave up
        print("\n[5] Checking for abandoned notification dispatches...")
        stmt = select(func.count(RequisitionTransition.id)).where(
            RequisitionTransition.dispatch_status == "failed"
        )
        failed = (await db.execute(stmt)).scalar() or 0
        if failed:
            print(f"⚠️  {failed} transitions exhausted their notification attempts.")
        else:
            print("✅ No abandoned notification dispatches.")

        print("\n" + "=" * 60)
        print("Integrity Check Complete.")
    return 1 if problems else 0


if __name__ == "__main__":
    sys.exit(asyncio.run(main()))
