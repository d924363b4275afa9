import logging
import os
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional

from bson import ObjectId
from fastapi import Depends, FastAPI, File, Form, HTTPException, Request, UploadFile, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles
from pydantic import BaseModel, EmailStr, Field
from pymongo import ReturnDocument
from starlette.exceptions import HTTPException as StarletteHTTPException

import bargaining
from auth import (
    create_access_token,
    get_password_hash,
    require_permission,
    require_roles,
    verify_password,
)
from bargaining import BargainError
from database import apply_update, create_document, db, get_documents, update_document
from schemas import (
    BargainStatus,
    Cart,
    CartItem,
    Order,
    OrderItem,
    OrderStatus,
    PaymentMethod,
    Product,
    Role,
    ShippingAddress,
    User,
)
from uploads import UPLOAD_URL_PREFIX, ensure_upload_dir, save_images

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger("bargainmart")

DEFAULT_CORS_ORIGINS = "http://localhost:3000,http://localhost:3001,https://bargain-mart-dpct.vercel.app"
CORS_ORIGINS = [o.strip() for o in os.getenv("CORS_ORIGINS", DEFAULT_CORS_ORIGINS).split(",") if o.strip()]

# Order statuses a customer may still cancel, compared case-insensitively
CANCELLABLE_STATUSES = {"pending", "processing"}

app = FastAPI(title="BargainMart API")

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.mount(UPLOAD_URL_PREFIX, StaticFiles(directory=str(ensure_upload_dir())), name="uploads")

if db is not None:
    try:
        db["user"].create_index("email", unique=True)
    except Exception as e:
        logger.warning("Could not create user email index: %s", e)


# Error responses are always {"msg": ...}

@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    return JSONResponse({"msg": exc.detail}, status_code=exc.status_code, headers=getattr(exc, "headers", None))


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    errors = exc.errors()
    msg = "Invalid request"
    if errors:
        first = errors[0]
        loc = ".".join(str(p) for p in first.get("loc", ()) if p not in ("body", "query", "path", "form"))
        msg = f"{loc}: {first.get('msg')}" if loc else first.get("msg", msg)
    return JSONResponse({"msg": msg}, status_code=status.HTTP_400_BAD_REQUEST)


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse({"msg": "Server error"}, status_code=status.HTTP_500_INTERNAL_SERVER_ERROR)


# Utilities

def serialize_doc(doc: Optional[Dict[str, Any]]):
    if not doc:
        return doc
    doc = dict(doc)
    if "_id" in doc:
        doc["id"] = str(doc.pop("_id"))
    for k, v in list(doc.items()):
        if isinstance(v, ObjectId):
            doc[k] = str(v)
    return doc


def require_db():
    if db is None:
        raise HTTPException(500, "Database not configured")


def to_object_id(value: str, resource: str) -> ObjectId:
    if not ObjectId.is_valid(value):
        raise HTTPException(404, f"{resource} not found")
    return ObjectId(value)


def find_or_404(collection: str, doc_id: str, resource: str, **extra) -> Dict[str, Any]:
    doc = db[collection].find_one({"_id": to_object_id(doc_id, resource), **extra})
    if not doc:
        raise HTTPException(404, f"{resource} not found")
    return doc


def summaries(collection: str, ids: Iterable[Optional[str]], fields: List[str]) -> Dict[str, Dict[str, Any]]:
    """Fetch `fields` of the referenced documents in one query, keyed by id."""
    oids = [ObjectId(i) for i in set(ids) if i and ObjectId.is_valid(i)]
    if not oids:
        return {}
    return {
        str(d["_id"]): {"id": str(d["_id"]), **{f: d.get(f) for f in fields}}
        for d in db[collection].find({"_id": {"$in": oids}})
    }


def _now():
    return datetime.now(timezone.utc)


@app.get("/")
def root():
    return {"message": "BargainMart Backend Running"}


@app.get("/test")
def test_database():
    try:
        collections = db.list_collection_names()
        return {"backend": "ok", "db": "ok", "collections": collections}
    except Exception as e:
        return {"backend": "ok", "db": f"error: {str(e)}"}


# ========== AUTH ==========

class RegisterPayload(BaseModel):
    name: str = Field(..., min_length=1)
    email: EmailStr
    password: str = Field(..., min_length=1)
    role: Role = Role.customer
    shop_name: Optional[str] = None
    shop_description: Optional[str] = None
    shop_address: Optional[str] = None
    gst_number: Optional[str] = None


class LoginPayload(BaseModel):
    email: EmailStr
    password: str


@app.post("/api/auth/register", status_code=status.HTTP_201_CREATED)
def register(payload: RegisterPayload):
    require_db()
    if db["user"].find_one({"email": payload.email}):
        raise HTTPException(400, "User already exists")

    data = payload.model_dump(exclude={"password"})
    user = User(**data, password_hash=get_password_hash(payload.password))
    uid = create_document("user", user)
    logger.info("Registered %s account %s", user.role, uid)
    return {
        "msg": "Registration successful",
        "user": {"id": uid, "name": user.name, "email": user.email, "role": user.role},
    }


@app.post("/api/auth/login")
def login(payload: LoginPayload):
    require_db()
    user = db["user"].find_one({"email": payload.email})
    if not user or not verify_password(payload.password, user["password_hash"]):
        logger.info("Failed login for %s", payload.email)
        raise HTTPException(400, "Invalid credentials")

    uid = str(user["_id"])
    token = create_access_token(data={"sub": uid, "role": user["role"]})
    return {
        "token": token,
        "token_type": "bearer",
        "role": user["role"],
        "user": {"id": uid, "name": user["name"], "email": user["email"]},
    }


@app.get("/api/auth/customer")
def customer_area(user=Depends(require_roles(Role.customer))):
    return {"msg": "Welcome, Customer!"}


@app.get("/api/auth/vendor")
def vendor_area(user=Depends(require_roles(Role.vendor))):
    return {"msg": "Welcome, Vendor!"}


@app.get("/api/auth/admin")
def admin_area(user=Depends(require_roles(Role.admin))):
    return {"msg": "Welcome, Admin!"}


# ========== PRODUCTS ==========

def with_vendor(products: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    vendors = summaries("user", (p.get("vendor_id") for p in products), ["name", "email"])
    out = []
    for p in products:
        item = serialize_doc(p)
        item["vendor"] = vendors.get(p.get("vendor_id"))
        out.append(item)
    return out


@app.post("/api/products", status_code=status.HTTP_201_CREATED)
def add_product(
    name: str = Form(...),
    price: float = Form(..., ge=0),
    description: Optional[str] = Form(None),
    stock: int = Form(0, ge=0),
    category: Optional[str] = Form(None),
    images: Optional[List[UploadFile]] = File(None),
    user=Depends(require_permission("product:create")),
):
    product = Product(
        name=name,
        description=description,
        price=price,
        stock=stock,
        vendor_id=user["id"],
        category=category,
        images=save_images(images),
    )
    pid = create_document("product", product)
    logger.info("Vendor %s added product %s", user["id"], pid)
    return serialize_doc(db["product"].find_one({"_id": ObjectId(pid)}))


@app.get("/api/products")
def list_vendor_products(user=Depends(require_permission("product:list_own"))):
    return [serialize_doc(p) for p in get_documents("product", {"vendor_id": user["id"]})]


@app.get("/api/products/all")
def list_all_products():
    require_db()
    return with_vendor(get_documents("product"))


@app.get("/api/products/{product_id}")
def get_product(product_id: str):
    require_db()
    return with_vendor([find_or_404("product", product_id, "Product")])[0]


@app.put("/api/products/{product_id}")
def update_product(
    product_id: str,
    name: Optional[str] = Form(None),
    price: Optional[float] = Form(None, ge=0),
    description: Optional[str] = Form(None),
    stock: Optional[int] = Form(None, ge=0),
    category: Optional[str] = Form(None),
    images: Optional[List[UploadFile]] = File(None),
    user=Depends(require_permission("product:update")),
):
    existing = find_or_404("product", product_id, "Product", vendor_id=user["id"])
    fields = {"name": name, "price": price, "description": description, "stock": stock, "category": category}
    updates = {k: v for k, v in fields.items() if v is not None}
    # keep the current images unless new files were uploaded
    image_paths = save_images(images)
    if image_paths:
        updates["images"] = image_paths
    if not updates:
        return serialize_doc(existing)
    return serialize_doc(update_document("product", {"_id": existing["_id"]}, updates))


@app.delete("/api/products/{product_id}")
def delete_product(product_id: str, user=Depends(require_permission("product:delete"))):
    res = db["product"].delete_one({"_id": to_object_id(product_id, "Product"), "vendor_id": user["id"]})
    if res.deleted_count == 0:
        raise HTTPException(404, "Product not found")
    logger.info("Vendor %s deleted product %s", user["id"], product_id)
    return {"msg": "Product deleted"}


# ========== ORDERS ==========

class CreateOrderPayload(BaseModel):
    products: List[OrderItem] = Field(..., min_length=1)
    total_amount: float = Field(ge=0)
    shipping: ShippingAddress = Field(default_factory=ShippingAddress)
    payment: PaymentMethod = PaymentMethod.cod
    bargain_id: Optional[str] = None


SNAPSHOT_FIELDS = ("name", "description", "category")


def snapshot_items(items: List[OrderItem]) -> List[OrderItem]:
    """Fill in missing name/description/category/image/vendor from the live product.

    The price is always the one the client sent.
    """
    live = summaries("product", (i.product_id for i in items), ["name", "description", "category", "images", "vendor_id"])
    out = []
    for item in items:
        product = live.get(item.product_id)
        if product:
            data = item.model_dump()
            for field in SNAPSHOT_FIELDS:
                if data.get(field) is None:
                    data[field] = product.get(field)
            if data.get("image") is None and product.get("images"):
                data["image"] = product["images"][0]
            if data.get("vendor_id") is None:
                data["vendor_id"] = product.get("vendor_id")
            item = OrderItem(**data)
        out.append(item)
    return out


def with_live_products(order: Dict[str, Any], vendor_id: Optional[str] = None) -> Dict[str, Any]:
    """Merge current product details into line items; only `vendor_id`'s items when given."""
    items = order.get("products") or []
    wanted = [i.get("product_id") for i in items if vendor_id is None or i.get("vendor_id") == vendor_id]
    live = summaries("product", wanted, ["images", "description", "category"])
    merged = []
    for item in items:
        item = dict(item)
        product = live.get(item.get("product_id")) if (vendor_id is None or item.get("vendor_id") == vendor_id) else None
        if product:
            item["images"] = product.get("images") or []
            # the live product image wins over the snapshot
            item["image"] = item["images"][0] if item["images"] else item.get("image")
            item["description"] = product.get("description")
            item["category"] = product.get("category")
        merged.append(item)
    out = serialize_doc(order)
    out["products"] = merged
    return out


@app.post("/api/orders", status_code=status.HTTP_201_CREATED)
def create_order(payload: CreateOrderPayload, user=Depends(require_permission("order:create"))):
    order = Order(
        user_id=user["id"],
        products=snapshot_items(payload.products),
        total_amount=payload.total_amount,
        shipping=payload.shipping,
        payment=payload.payment,
        bargain_id=payload.bargain_id,
    )
    oid = create_document("order", order)
    db["cart"].update_one({"user_id": user["id"]}, {"$set": {"items": [], "updated_at": _now()}})
    logger.info("Order %s placed by %s for %s", oid, user["id"], payload.total_amount)
    return {"msg": "Order placed successfully", "order": serialize_doc(db["order"].find_one({"_id": ObjectId(oid)}))}


@app.get("/api/orders")
def list_user_orders(user=Depends(require_permission("order:list_own"))):
    orders = get_documents("order", {"user_id": user["id"]}, sort=[("created_at", -1), ("_id", -1)])
    return [with_live_products(o) for o in orders]


@app.get("/api/orders/vendor")
def list_vendor_orders(user=Depends(require_permission("order:list_vendor"))):
    orders = get_documents("order", {"products.vendor_id": user["id"]}, sort=[("created_at", -1), ("_id", -1)])
    return [with_live_products(o, vendor_id=user["id"]) for o in orders]


@app.patch("/api/orders/{order_id}/cancel")
def cancel_order(order_id: str, user=Depends(require_permission("order:cancel"))):
    order = find_or_404("order", order_id, "Order")
    if order.get("user_id") != user["id"]:
        raise HTTPException(403, "Not authorized to cancel this order")

    current = order.get("status") or ""
    if current.lower() not in CANCELLABLE_STATUSES:
        raise HTTPException(
            400,
            f"Cannot cancel order with status: {current}. Only pending or processing orders can be cancelled.",
        )

    updated = update_document(
        "order",
        {"_id": order["_id"]},
        {"status": OrderStatus.cancelled.value, "cancelled_at": _now()},
    )
    if updated is None:
        raise HTTPException(404, "Order not found")
    logger.info("Order %s cancelled by %s", order_id, user["id"])
    return {
        "msg": "Order cancelled successfully",
        "order": {"id": order_id, "status": updated["status"], "cancelled_at": updated["cancelled_at"]},
    }


# ========== BARGAINS ==========

class StartBargainPayload(BaseModel):
    product_id: str
    vendor_id: Optional[str] = None
    price: Optional[float] = Field(None, ge=0)


class MessagePayload(BaseModel):
    text: Optional[str] = None
    price: Optional[float] = Field(None, ge=0)


class CounterPayload(BaseModel):
    text: Optional[str] = None
    price: float = Field(..., gt=0)


class AcceptPayload(BaseModel):
    # 0 falls back to the last offer
    price: Optional[float] = Field(None, ge=0)


def with_parties(threads: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    products = summaries("product", (t.get("product_id") for t in threads), ["name", "price"])
    people = summaries(
        "user",
        [t.get("customer_id") for t in threads] + [t.get("vendor_id") for t in threads],
        ["name", "email"],
    )
    out = []
    for t in threads:
        item = serialize_doc(t)
        item["product"] = products.get(t.get("product_id"))
        item["customer"] = people.get(t.get("customer_id"))
        item["vendor"] = people.get(t.get("vendor_id"))
        out.append(item)
    return out


def load_thread(bargain_id: str, user: Dict[str, Any]) -> Dict[str, Any]:
    thread = find_or_404("bargain", bargain_id, "Bargain")
    try:
        bargaining.ensure_participant(thread, user)
    except BargainError as e:
        raise HTTPException(e.status_code, e.msg)
    return thread


def apply_action(bargain_id: str, user: Dict[str, Any], action: str, **kwargs) -> Dict[str, Any]:
    thread = load_thread(bargain_id, user)
    try:
        update = bargaining.transition(thread, action, **kwargs)
    except BargainError as e:
        raise HTTPException(e.status_code, e.msg)
    # re-check the status in the filter; another request may have finished the thread
    updated = apply_update(
        "bargain",
        {"_id": thread["_id"], "status": {"$in": bargaining.source_statuses(action)}},
        update,
    )
    if updated is None:
        current = find_or_404("bargain", bargain_id, "Bargain")
        raise HTTPException(400, f"Bargain is already {current.get('status')}")
    new_status = update.get("$set", {}).get("status")
    if new_status:
        logger.info("Bargain %s %s by %s", bargain_id, new_status, user["id"])
    return with_parties([updated])[0]


@app.post("/api/bargains/start")
def start_bargain(payload: StartBargainPayload, user=Depends(require_permission("bargain:start"))):
    product = find_or_404("product", payload.product_id, "Product")
    vendor_id = product["vendor_id"]
    if payload.vendor_id and payload.vendor_id != vendor_id:
        raise HTTPException(400, "Vendor does not own this product")

    thread = bargaining.start_thread(payload.product_id, user["id"], vendor_id, payload.price)
    bid = create_document("bargain", thread)
    logger.info("Bargain %s started by %s on product %s", bid, user["id"], payload.product_id)
    return with_parties([db["bargain"].find_one({"_id": ObjectId(bid)})])[0]


@app.get("/api/bargains/customer")
def list_customer_bargains(user=Depends(require_permission("bargain:list_customer"))):
    return with_parties(get_documents("bargain", {"customer_id": user["id"]}, sort=[("updated_at", -1), ("_id", -1)]))


@app.get("/api/bargains/vendor")
def list_vendor_bargains(user=Depends(require_permission("bargain:list_vendor"))):
    return with_parties(get_documents("bargain", {"vendor_id": user["id"]}, sort=[("updated_at", -1), ("_id", -1)]))


@app.get("/api/bargains/{bargain_id}")
def get_bargain(bargain_id: str, user=Depends(require_permission("bargain:view"))):
    return with_parties([load_thread(bargain_id, user)])[0]


@app.post("/api/bargains/{bargain_id}/message")
def send_message(bargain_id: str, payload: MessagePayload, user=Depends(require_permission("bargain:message"))):
    return apply_action(
        bargain_id,
        user,
        bargaining.MESSAGE,
        sender=bargaining.sender_for(user["role"]),
        text=payload.text,
        price=payload.price,
    )


@app.post("/api/bargains/{bargain_id}/counter")
def counter_offer(bargain_id: str, payload: CounterPayload, user=Depends(require_permission("bargain:counter"))):
    return apply_action(
        bargain_id,
        user,
        bargaining.COUNTER,
        sender=bargaining.sender_for(user["role"]),
        text=payload.text,
        price=payload.price,
    )


@app.post("/api/bargains/{bargain_id}/accept")
def accept_bargain(
    bargain_id: str,
    payload: Optional[AcceptPayload] = None,
    user=Depends(require_permission("bargain:accept")),
):
    return apply_action(bargain_id, user, bargaining.ACCEPT, price=payload.price if payload else None)


@app.post("/api/bargains/{bargain_id}/customer-accept")
def customer_accept_bargain(
    bargain_id: str,
    payload: Optional[AcceptPayload] = None,
    user=Depends(require_permission("bargain:customer_accept")),
):
    return apply_action(bargain_id, user, bargaining.ACCEPT, price=payload.price if payload else None)


@app.post("/api/bargains/{bargain_id}/reject")
def reject_bargain(bargain_id: str, user=Depends(require_permission("bargain:reject"))):
    return apply_action(bargain_id, user, bargaining.REJECT)


@app.post("/api/bargains/{bargain_id}/customer-reject")
def customer_reject_bargain(bargain_id: str, user=Depends(require_permission("bargain:customer_reject"))):
    return apply_action(bargain_id, user, bargaining.REJECT)


@app.delete("/api/bargains/{bargain_id}")
def delete_bargain(bargain_id: str, user=Depends(require_permission("bargain:delete"))):
    thread = load_thread(bargain_id, user)
    db["bargain"].delete_one({"_id": thread["_id"]})
    logger.info("Bargain %s deleted by %s", bargain_id, user["id"])
    return {"msg": "Bargain deleted successfully"}


# ========== CART ==========

class CartItemPayload(BaseModel):
    product_id: str
    quantity: int = Field(1, ge=1)
    bargain_id: Optional[str] = None


def load_cart(user_id: str) -> Dict[str, Any]:
    now = _now()
    return db["cart"].find_one_and_update(
        {"user_id": user_id},
        {"$setOnInsert": {**Cart(user_id=user_id).model_dump(exclude={"user_id"}), "created_at": now, "updated_at": now}},
        upsert=True,
        return_document=ReturnDocument.AFTER,
    )


def cart_response(cart: Dict[str, Any]) -> Dict[str, Any]:
    out = serialize_doc(cart)
    out["total"] = sum(i.get("price", 0) * i.get("quantity", 1) for i in cart.get("items") or [])
    return out


def bargained_price(bargain_id: str, product_id: str, user: Dict[str, Any]) -> float:
    thread = find_or_404("bargain", bargain_id, "Bargain")
    if (
        thread.get("customer_id") != user["id"]
        or thread.get("product_id") != product_id
        or thread.get("status") != BargainStatus.accepted.value
        or thread.get("final_price") is None
    ):
        raise HTTPException(400, "Bargain is not accepted for this product")
    return thread["final_price"]


@app.get("/api/cart")
def get_cart(user=Depends(require_permission("cart:manage"))):
    return cart_response(load_cart(user["id"]))


@app.post("/api/cart/items")
def add_to_cart(payload: CartItemPayload, user=Depends(require_permission("cart:manage"))):
    product = find_or_404("product", payload.product_id, "Product")
    if product.get("stock", 0) <= 0:
        raise HTTPException(400, "Product is out of stock")

    price = product["price"]
    if payload.bargain_id:
        price = bargained_price(payload.bargain_id, payload.product_id, user)

    cart = load_cart(user["id"])
    items = list(cart.get("items") or [])
    for item in items:
        if item["product_id"] == payload.product_id and item.get("bargain_id") == payload.bargain_id:
            item["quantity"] = item.get("quantity", 1) + payload.quantity
            break
    else:
        items.append(
            CartItem(
                product_id=payload.product_id,
                vendor_id=product.get("vendor_id"),
                name=product.get("name"),
                price=price,
                quantity=payload.quantity,
                bargain_id=payload.bargain_id,
            ).model_dump()
        )
    return cart_response(update_document("cart", {"_id": cart["_id"]}, {"items": items}))


@app.delete("/api/cart/items/{product_id}")
def remove_from_cart(product_id: str, user=Depends(require_permission("cart:manage"))):
    cart = load_cart(user["id"])
    items = [i for i in cart.get("items") or [] if i["product_id"] != product_id]
    return cart_response(update_document("cart", {"_id": cart["_id"]}, {"items": items}))


@app.delete("/api/cart")
def clear_cart(user=Depends(require_permission("cart:manage"))):
    cart = load_cart(user["id"])
    return cart_response(update_document("cart", {"_id": cart["_id"]}, {"items": []}))


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
