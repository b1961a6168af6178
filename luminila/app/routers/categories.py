import re
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field

from ..audit_log import write_audit
from ..db import get_conn, set_company_context
from ..deps import get_company_id, get_current_user, require_permission

router = APIRouter(prefix="/categories", tags=["inventory"])

CATEGORY_COLUMNS = "id, name, slug, description, parent_id, sort_order, icon, color, is_active, created_at, updated_at"


class CategoryIn(BaseModel):
    name: str
    slug: Optional[str] = None
    description: Optional[str] = None
    parent_id: Optional[str] = None
    sort_order: int = 0
    icon: Optional[str] = None
    color: Optional[str] = Field(default=None, max_length=20)
    is_active: bool = True


class CategoryUpdate(BaseModel):
    name: Optional[str] = None
    slug: Optional[str] = None
    description: Optional[str] = None
    parent_id: Optional[str] = None
    sort_order: Optional[int] = None
    icon: Optional[str] = None
    color: Optional[str] = Field(default=None, max_length=20)
    is_active: Optional[bool] = None


def slugify(text: str) -> str:
    """"Temple Necklaces & Sets" -> "temple-necklaces-sets"."""
    return re.sub(r"[^a-z0-9]+", "-", (text or "").lower()).strip("-")


def build_tree(rows: list, parent_id=None, level: int = 0) -> list:
    """Nest rows under their parent, keeping the incoming (sort_order) order at each level."""
    out = []
    for r in rows:
        if r["parent_id"] == parent_id:
            out.append({**r, "level": level, "children": build_tree(rows, r["id"], level + 1)})
    return out


def flatten_tree(tree: list, prefix: str = "") -> list:
    """Indented picker list: children follow their parent, two spaces per level."""
    out = []
    for node in tree:
        out.append({"id": node["id"], "name": prefix + node["name"], "level": node["level"]})
        out.extend(flatten_tree(node["children"], prefix + "  "))
    return out


def _fetch_categories(cur, company_id: str, active_only: bool) -> list:
    cur.execute(
        f"""
        SELECT {CATEGORY_COLUMNS}
        FROM product_categories
        WHERE company_id = %s AND (NOT %s OR is_active = true)
        ORDER BY sort_order, name
        """,
        (company_id, active_only),
    )
    return cur.fetchall()


def _check_parent(cur, company_id: str, category_id: Optional[str], parent_id: str) -> None:
    if category_id and parent_id == category_id:
        raise HTTPException(status_code=400, detail="a category cannot be its own parent")
    cur.execute("SELECT id FROM product_categories WHERE company_id = %s AND id = %s", (company_id, parent_id))
    if not cur.fetchone():
        raise HTTPException(status_code=404, detail="parent category not found")
    if not category_id:
        return
    # Walk up from the new parent; meeting the category itself would close a loop.
    cur.execute(
        """
        WITH RECURSIVE chain AS (
          SELECT id, parent_id FROM product_categories WHERE company_id = %s AND id = %s
          UNION ALL
          SELECT c.id, c.parent_id FROM product_categories c JOIN chain ON c.id = chain.parent_id
        )
        SELECT 1 FROM chain WHERE id = %s LIMIT 1
        """,
        (company_id, parent_id, category_id),
    )
    if cur.fetchone():
        raise HTTPException(status_code=400, detail="a category cannot move under its own subcategory")


@router.get("", dependencies=[Depends(require_permission("inventory:read"))])
def list_categories(active_only: bool = False, company_id: str = Depends(get_company_id)):
    with get_conn() as conn:
        set_company_context(conn, company_id)
        with conn.cursor() as cur:
            return {"categories": _fetch_categories(cur, company_id, active_only)}


@router.get("/tree", dependencies=[Depends(require_permission("inventory:read"))])
def category_tree(flat: bool = False, company_id: str = Depends(get_company_id)):
    with get_conn() as conn:
        set_company_context(conn, company_id)
        with conn.cursor() as cur:
            tree = build_tree(_fetch_categories(cur, company_id, True))
    if flat:
        return {"categories": flatten_tree(tree)}
    return {"tree": tree}


@router.get("/{category_id}", dependencies=[Depends(require_permission("inventory:read"))])
def get_category(category_id: str, company_id: str = Depends(get_company_id)):
    with get_conn() as conn:
        set_company_context(conn, company_id)
        with conn.cursor() as cur:
            cur.execute(
                f"SELECT {CATEGORY_COLUMNS} FROM product_categories WHERE company_id = %s AND id = %s",
                (company_id, category_id),
            )
            row = cur.fetchone()
    if not row:
        raise HTTPException(status_code=404, detail="category not found")
    return {"category": row}


@router.post("", dependencies=[Depends(require_permission("inventory:write"))])
def create_category(data: CategoryIn, company_id: str = Depends(get_company_id), user=Depends(get_current_user)):
    name = (data.name or "").strip()
    if not name:
        raise HTTPException(status_code=400, detail="name is required")
    slug = slugify(data.slug or name)
    if not slug:
        raise HTTPException(status_code=400, detail="slug must contain letters or digits")
    with get_conn() as conn:
        set_company_context(conn, company_id)
        with conn.transaction():
            with conn.cursor() as cur:
                if data.parent_id:
                    _check_parent(cur, company_id, None, data.parent_id)
                cur.execute(
                    """
                    INSERT INTO product_categories
                      (id, company_id, name, slug, description, parent_id, sort_order, icon, color, is_active)
                    VALUES
                      (gen_random_uuid(), %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    ON CONFLICT (company_id, slug) DO NOTHING
                    RETURNING id
                    """,
                    (
                        company_id,
                        name,
                        slug,
                        (data.description or "").strip() or None,
                        data.parent_id,
                        data.sort_order,
                        data.icon,
                        data.color,
                        data.is_active,
                    ),
                )
                row = cur.fetchone()
                if not row:
                    raise HTTPException(status_code=409, detail=f"category slug {slug} already exists")
                write_audit(cur, company_id, user["user_id"], "category_create", "product_category", row["id"], {"name": name, "slug": slug})
                return {"id": row["id"], "slug": slug}


@router.patch("/{category_id}", dependencies=[Depends(require_permission("inventory:write"))])
def update_category(
    category_id: str,
    data: CategoryUpdate,
    company_id: str = Depends(get_company_id),
    user=Depends(get_current_user),
):
    patch = data.model_dump(exclude_unset=True)
    if not patch:
        return {"ok": True}
    if "name" in patch:
        patch["name"] = (patch["name"] or "").strip()
        if not patch["name"]:
            raise HTTPException(status_code=400, detail="name is required")
    if "slug" in patch:
        patch["slug"] = slugify(patch["slug"] or "")
        if not patch["slug"]:
            raise HTTPException(status_code=400, detail="slug must contain letters or digits")
    with get_conn() as conn:
        set_company_context(conn, company_id)
        with conn.transaction():
            with conn.cursor() as cur:
                cur.execute(
                    "SELECT id, name FROM product_categories WHERE company_id = %s AND id = %s FOR UPDATE",
                    (company_id, category_id),
                )
                current = cur.fetchone()
                if not current:
                    raise HTTPException(status_code=404, detail="category not found")
                if patch.get("parent_id"):
                    _check_parent(cur, company_id, category_id, patch["parent_id"])
                fields = [f"{k} = %s" for k in patch]
                cur.execute(
                    f"""
                    UPDATE product_categories
                    SET {', '.join(fields)}, updated_at = now()
                    WHERE company_id = %s AND id = %s
                    """,
                    [*patch.values(), company_id, category_id],
                )
                # Products carry the category by name.
                if "name" in patch and patch["name"] != current["name"]:
                    cur.execute(
                        "UPDATE products SET category = %s, updated_at = now() WHERE company_id = %s AND category = %s",
                        (patch["name"], company_id, current["name"]),
                    )
                write_audit(cur, company_id, user["user_id"], "category_update", "product_category", category_id, {"fields": sorted(patch)})
                return {"ok": True}


@router.delete("/{category_id}", dependencies=[Depends(require_permission("inventory:write"))])
def delete_category(category_id: str, company_id: str = Depends(get_company_id), user=Depends(get_current_user)):
    with get_conn() as conn:
        set_company_context(conn, company_id)
        with conn.transaction():
            with conn.cursor() as cur:
                cur.execute(
                    "SELECT COUNT(*)::int AS n FROM product_categories WHERE company_id = %s AND parent_id = %s",
                    (company_id, category_id),
                )
                children = int(cur.fetchone()["n"])
                if children:
                    raise HTTPException(status_code=409, detail=f"category has {children} subcategories")
                cur.execute(
                    "DELETE FROM product_categories WHERE company_id = %s AND id = %s RETURNING name",
                    (company_id, category_id),
                )
                row = cur.fetchone()
                if not row:
                    raise HTTPException(status_code=404, detail="category not found")
                write_audit(cur, company_id, user["user_id"], "category_delete", "product_category", category_id, {"name": row["name"]})
                return {"ok": True}
