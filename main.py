import time
import uuid
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, Dict, List, Optional

from fastapi import Depends, FastAPI, File, Form, HTTPException, Request, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.staticfiles import StaticFiles
from loguru import logger
from pydantic import BaseModel, EmailStr, Field
from pymongo import DESCENDING
from pymongo.database import Database
from starlette.responses import JSONResponse

from config import Settings, configure_logging, get_settings
from database import close_db, connect_db, get_db, sanitize, to_obj_id
from schemas import (
    ORDER_STATUSES,
    Address,
    Cart as CartSchema,
    CartItem,
    Order as OrderSchema,
    OrderItem,
    PaymentResult,
    Product as ProductSchema,
    Review as ReviewSchema,
    ShippingAddress,
    User as UserSchema,
    utcnow,
)
from security import (
    create_access_token,
    get_current_user,
    hash_password,
    require_admin,
    role_for_email,
    verify_password,
)
from uploads import MAX_IMAGES_PER_PRODUCT, UploadRejected, delete_images, save_images

settings = get_settings()


@asynccontextmanager
async def lifespan(app: FastAPI):
    configure_logging(settings)
    connect_db(settings)
    logger.info("Server is up and running on port {}", settings.port)
    try:
        yield
    finally:
        close_db()


# App and CORS
app = FastAPI(title="Storefront API", lifespan=lifespan)
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.allowed_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def log_requests(request: Request, call_next):
    request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
    start = time.perf_counter()
    with logger.contextualize(request_id=request_id, method=request.method, path=request.url.path):
        logger.info("request.start")
        try:
            response = await call_next(request)
        except Exception as exc:
            duration_ms = (time.perf_counter() - start) * 1000
            logger.bind(status_code=500, duration_ms=round(duration_ms, 1), error_type=type(exc).__name__).exception(
                "request.error"
            )
            return JSONResponse(
                status_code=500,
                content={"detail": "Internal Server Error", "request_id": request_id},
                headers={"X-Request-ID": request_id},
            )
        duration_ms = (time.perf_counter() - start) * 1000
        logger.bind(status_code=response.status_code, duration_ms=round(duration_ms, 1)).info("request.end")
        response.headers.setdefault("X-Request-ID", request_id)
        return response


@app.exception_handler(UploadRejected)
async def upload_rejected_handler(request: Request, exc: UploadRejected):
    logger.warning("Upload rejected: {}", exc)
    return JSONResponse(status_code=400, content={"detail": str(exc)})


# Helpers

def find_or_404(db: Database, collection: str, id_str: str, label: str) -> Dict[str, Any]:
    doc = db[collection].find_one({"_id": to_obj_id(id_str)})
    if not doc:
        raise HTTPException(status_code=404, detail=f"{label} not found")
    return doc


def products_by_id(db: Database, ids: List[str]) -> Dict[str, Dict[str, Any]]:
    oids = [to_obj_id(i) for i in set(ids)]
    return {str(p["_id"]): sanitize(p) for p in db["product"].find({"_id": {"$in": oids}})}


def insert(db: Database, collection: str, model: BaseModel) -> Dict[str, Any]:
    doc = model.model_dump()
    res = db[collection].insert_one(doc)
    doc["_id"] = res.inserted_id
    return sanitize(doc)


# Request/Response Models
class SignupRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=60)
    email: EmailStr
    password: str
    image_url: str = ""

class LoginRequest(BaseModel):
    email: EmailStr
    password: str

class TokenResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
    user: Dict[str, Any]

class AddressRequest(ShippingAddress):
    label: str = Field(..., min_length=1)
    is_default: bool = False

class AddressUpdateRequest(BaseModel):
    label: Optional[str] = Field(None, min_length=1)
    full_name: Optional[str] = Field(None, min_length=1)
    street_address: Optional[str] = Field(None, min_length=1)
    city: Optional[str] = Field(None, min_length=1)
    state: Optional[str] = Field(None, min_length=1)
    zip_code: Optional[str] = Field(None, min_length=1)
    phone_number: Optional[str] = Field(None, min_length=1)
    is_default: Optional[bool] = None

class WishlistRequest(BaseModel):
    product_id: str

class AddToCartRequest(BaseModel):
    product_id: str
    quantity: int = Field(1, ge=1)

class UpdateCartItemRequest(BaseModel):
    quantity: int = Field(..., ge=1)

class OrderItemRequest(BaseModel):
    product_id: str
    quantity: int = Field(..., ge=1)

class CreateOrderRequest(BaseModel):
    order_items: List[OrderItemRequest] = Field(..., min_length=1)
    shipping_address: ShippingAddress
    payment_result: Optional[PaymentResult] = None

class CreateReviewRequest(BaseModel):
    product_id: str
    order_id: str
    rating: int = Field(..., ge=1, le=5)

class UpdateOrderStatusRequest(BaseModel):
    status: str


# Health
@app.get("/api/health")
def health():
    return {"message": "Success"}

@app.get("/api/health/db")
def health_database(db: Database = Depends(get_db)):
    try:
        return {"backend": "ok", "database": "ok", "collections": db.list_collection_names()}
    except Exception as e:
        logger.exception("Database health check failed")
        return JSONResponse(status_code=503, content={"backend": "ok", "database": f"error: {e}"})


# Auth Routes
@app.post("/api/auth/signup", response_model=TokenResponse, status_code=201)
def signup(payload: SignupRequest, db: Database = Depends(get_db)):
    if db["user"].find_one({"email": payload.email}):
        raise HTTPException(status_code=409, detail="Email already registered")
    user = insert(db, "user", UserSchema(
        name=payload.name,
        email=payload.email,
        password_hash=hash_password(payload.password),
        image_url=payload.image_url,
        role=role_for_email(payload.email),
    ))
    logger.info("New {} account {}", user["role"], user["id"])
    return TokenResponse(access_token=create_access_token({"sub": user["id"]}), user=user)

@app.post("/api/auth/login", response_model=TokenResponse)
def login(payload: LoginRequest, db: Database = Depends(get_db)):
    user = db["user"].find_one({"email": payload.email})
    if not user or not verify_password(payload.password, user.get("password_hash", "")):
        raise HTTPException(status_code=401, detail="Invalid email or password")
    token = create_access_token({"sub": str(user["_id"])})
    return TokenResponse(access_token=token, user=sanitize(user))

@app.get("/api/auth/me")
def me(current_user=Depends(get_current_user)):
    return current_user


# Address Routes
def save_addresses(db: Database, user_id: str, addresses: List[Dict[str, Any]]) -> None:
    db["user"].update_one(
        {"_id": to_obj_id(user_id)},
        {"$set": {"addresses": addresses, "updated_at": utcnow()}},
    )

def clear_default(addresses: List[Dict[str, Any]]) -> None:
    for a in addresses:
        a["is_default"] = False

@app.get("/api/users/addresses")
def get_addresses(current_user=Depends(get_current_user)):
    return {"addresses": current_user.get("addresses", [])}

@app.post("/api/users/addresses", status_code=201)
def add_address(payload: AddressRequest, current_user=Depends(get_current_user), db: Database = Depends(get_db)):
    addresses = list(current_user.get("addresses", []))
    if payload.is_default:
        clear_default(addresses)
    addresses.append(Address(**payload.model_dump()).model_dump())
    save_addresses(db, current_user["id"], addresses)
    return {"message": "Address added successfully", "addresses": addresses}

@app.put("/api/users/addresses/{address_id}")
def update_address(
    address_id: str,
    payload: AddressUpdateRequest,
    current_user=Depends(get_current_user),
    db: Database = Depends(get_db),
):
    addresses = list(current_user.get("addresses", []))
    target = next((a for a in addresses if a.get("id") == address_id), None)
    if target is None:
        raise HTTPException(status_code=404, detail="Address not found")
    changes = payload.model_dump(exclude_none=True)
    if changes.get("is_default"):
        clear_default(addresses)
    target.update(changes)
    save_addresses(db, current_user["id"], addresses)
    return {"message": "Address updated successfully", "addresses": addresses}

@app.delete("/api/users/addresses/{address_id}")
def delete_address(address_id: str, current_user=Depends(get_current_user), db: Database = Depends(get_db)):
    addresses = current_user.get("addresses", [])
    remaining = [a for a in addresses if a.get("id") != address_id]
    if len(remaining) == len(addresses):
        raise HTTPException(status_code=404, detail="Address not found")
    save_addresses(db, current_user["id"], remaining)
    return {"message": "Address deleted successfully", "addresses": remaining}


# Wishlist Routes
@app.get("/api/users/wishlist")
def get_wishlist(current_user=Depends(get_current_user), db: Database = Depends(get_db)):
    ids = current_user.get("wishlist", [])
    found = products_by_id(db, ids) if ids else {}
    return {"wishlist": [found[i] for i in ids if i in found]}

@app.post("/api/users/wishlist")
def add_to_wishlist(payload: WishlistRequest, current_user=Depends(get_current_user), db: Database = Depends(get_db)):
    find_or_404(db, "product", payload.product_id, "Product")
    if payload.product_id in current_user.get("wishlist", []):
        raise HTTPException(status_code=400, detail="Product already in wishlist")
    db["user"].update_one(
        {"_id": to_obj_id(current_user["id"])},
        {"$addToSet": {"wishlist": payload.product_id}, "$set": {"updated_at": utcnow()}},
    )
    return {"message": "Product added to wishlist", "wishlist": current_user.get("wishlist", []) + [payload.product_id]}

@app.delete("/api/users/wishlist/{product_id}")
def remove_from_wishlist(product_id: str, current_user=Depends(get_current_user), db: Database = Depends(get_db)):
    wishlist = current_user.get("wishlist", [])
    if product_id not in wishlist:
        raise HTTPException(status_code=400, detail="Product not found in wishlist")
    db["user"].update_one(
        {"_id": to_obj_id(current_user["id"])},
        {"$pull": {"wishlist": product_id}, "$set": {"updated_at": utcnow()}},
    )
    return {"message": "Product removed from wishlist", "wishlist": [p for p in wishlist if p != product_id]}


# Product Routes
@app.get("/api/products")
def list_products(category: Optional[str] = None, db: Database = Depends(get_db)):
    q: Dict[str, Any] = {}
    if category:
        q["category"] = category
    return [sanitize(p) for p in db["product"].find(q).sort("created_at", DESCENDING)]

@app.get("/api/products/{product_id}")
def get_product(product_id: str, db: Database = Depends(get_db)):
    return sanitize(find_or_404(db, "product", product_id, "Product"))


# Cart Routes
def get_or_create_cart(db: Database, user_id: str) -> Dict[str, Any]:
    cart = db["cart"].find_one({"user_id": user_id})
    if cart:
        return sanitize(cart)
    return insert(db, "cart", CartSchema(user_id=user_id))

def with_products(db: Database, cart: Dict[str, Any]) -> Dict[str, Any]:
    items = cart.get("items", [])
    found = products_by_id(db, [i["product_id"] for i in items]) if items else {}
    cart["items"] = [{**i, "product": found.get(i["product_id"])} for i in items]
    return cart

def save_cart(db: Database, cart: Dict[str, Any]) -> None:
    db["cart"].update_one(
        {"_id": to_obj_id(cart["id"])},
        {"$set": {"items": cart["items"], "updated_at": utcnow()}},
    )

def check_stock(product: Dict[str, Any], quantity: int) -> None:
    if product.get("stock", 0) < quantity:
        raise HTTPException(status_code=400, detail="Insufficient stock")

@app.get("/api/cart")
def get_cart(current_user=Depends(get_current_user), db: Database = Depends(get_db)):
    return {"cart": with_products(db, get_or_create_cart(db, current_user["id"]))}

@app.post("/api/cart")
def add_to_cart(payload: AddToCartRequest, current_user=Depends(get_current_user), db: Database = Depends(get_db)):
    product = find_or_404(db, "product", payload.product_id, "Product")
    cart = get_or_create_cart(db, current_user["id"])
    existing = next((i for i in cart["items"] if i["product_id"] == payload.product_id), None)
    if existing:
        check_stock(product, existing["quantity"] + payload.quantity)
        existing["quantity"] += payload.quantity
    else:
        check_stock(product, payload.quantity)
        cart["items"].append(CartItem(product_id=payload.product_id, quantity=payload.quantity).model_dump())
    save_cart(db, cart)
    return {"message": "Item added to cart", "cart": with_products(db, cart)}

@app.put("/api/cart/{product_id}")
def update_cart_item(
    product_id: str,
    payload: UpdateCartItemRequest,
    current_user=Depends(get_current_user),
    db: Database = Depends(get_db),
):
    cart = db["cart"].find_one({"user_id": current_user["id"]})
    if not cart:
        raise HTTPException(status_code=404, detail="Cart not found")
    cart = sanitize(cart)
    item = next((i for i in cart["items"] if i["product_id"] == product_id), None)
    if item is None:
        raise HTTPException(status_code=404, detail="Item not found in cart")
    check_stock(find_or_404(db, "product", product_id, "Product"), payload.quantity)
    item["quantity"] = payload.quantity
    save_cart(db, cart)
    return {"message": "Cart updated successfully", "cart": with_products(db, cart)}

@app.delete("/api/cart/{product_id}")
def remove_from_cart(product_id: str, current_user=Depends(get_current_user), db: Database = Depends(get_db)):
    cart = db["cart"].find_one({"user_id": current_user["id"]})
    if not cart:
        raise HTTPException(status_code=404, detail="Cart not found")
    cart = sanitize(cart)
    cart["items"] = [i for i in cart["items"] if i["product_id"] != product_id]
    save_cart(db, cart)
    return {"message": "Item removed from cart", "cart": with_products(db, cart)}

@app.delete("/api/cart")
def clear_cart(current_user=Depends(get_current_user), db: Database = Depends(get_db)):
    cart = get_or_create_cart(db, current_user["id"])
    cart["items"] = []
    save_cart(db, cart)
    return {"message": "Cart cleared", "cart": cart}


# Order Routes
@app.post("/api/orders", status_code=201)
def create_order(payload: CreateOrderRequest, current_user=Depends(get_current_user), db: Database = Depends(get_db)):
    found = products_by_id(db, [i.product_id for i in payload.order_items])
    wanted: Dict[str, int] = {}
    items = []
    for req in payload.order_items:
        product = found.get(req.product_id)
        if product is None:
            raise HTTPException(status_code=404, detail=f"Product {req.product_id} not found")
        wanted[req.product_id] = wanted.get(req.product_id, 0) + req.quantity
        items.append(OrderItem(
            product_id=req.product_id,
            name=product["name"],
            price=product["price"],
            quantity=req.quantity,
            image=(product.get("images") or [""])[0],
        ))
    for product_id, quantity in wanted.items():
        check_stock(found[product_id], quantity)

    taken: Dict[str, int] = {}
    for product_id, quantity in wanted.items():
        res = db["product"].update_one(
            {"_id": to_obj_id(product_id), "stock": {"$gte": quantity}},
            {"$inc": {"stock": -quantity}},
        )
        if res.modified_count != 1:
            for pid, q in taken.items():
                db["product"].update_one({"_id": to_obj_id(pid)}, {"$inc": {"stock": q}})
            raise HTTPException(status_code=400, detail="Insufficient stock")
        taken[product_id] = quantity

    total = round(sum(i.price * i.quantity for i in items), 2)
    order = insert(db, "order", OrderSchema(
        user_id=current_user["id"],
        order_items=items,
        shipping_address=payload.shipping_address,
        payment_result=payload.payment_result,
        total_price=total,
    ))
    db["cart"].update_one({"user_id": current_user["id"]}, {"$set": {"items": [], "updated_at": utcnow()}})
    logger.info("Order {} placed by {} for {}", order["id"], current_user["id"], total)
    return {"message": "Order created successfully", "order": order}


@app.get("/api/orders")
def get_user_orders(current_user=Depends(get_current_user), db: Database = Depends(get_db)):
    orders = [sanitize(o) for o in db["order"].find({"user_id": current_user["id"]}).sort("created_at", DESCENDING)]
    reviewed = {
        r["order_id"]
        for r in db["review"].find({"user_id": current_user["id"], "order_id": {"$in": [o["id"] for o in orders]}})
    }
    for o in orders:
        o["has_reviewed"] = o["id"] in reviewed
    return {"orders": orders}


# Review Routes
def refresh_product_rating(db: Database, product_id: str) -> None:
    agg = list(db["review"].aggregate([
        {"$match": {"product_id": product_id}},
        {"$group": {"_id": "$product_id", "avg": {"$avg": "$rating"}, "count": {"$sum": 1}}},
    ]))
    db["product"].update_one(
        {"_id": to_obj_id(product_id)},
        {"$set": {
            "average_rating": round(agg[0]["avg"], 2) if agg else 0,
            "total_reviews": agg[0]["count"] if agg else 0,
            "updated_at": utcnow(),
        }},
    )

@app.post("/api/reviews", status_code=201)
def create_review(payload: CreateReviewRequest, current_user=Depends(get_current_user), db: Database = Depends(get_db)):
    order = find_or_404(db, "order", payload.order_id, "Order")
    if order["user_id"] != current_user["id"]:
        raise HTTPException(status_code=403, detail="Not authorized to review this order")
    if order["status"] != "delivered":
        raise HTTPException(status_code=400, detail="Can only review delivered orders")
    if not any(i["product_id"] == payload.product_id for i in order["order_items"]):
        raise HTTPException(status_code=400, detail="Product not found in this order")
    find_or_404(db, "product", payload.product_id, "Product")
    if db["review"].find_one({"product_id": payload.product_id, "user_id": current_user["id"]}):
        raise HTTPException(status_code=400, detail="You have already reviewed this product")
    review = insert(db, "review", ReviewSchema(
        product_id=payload.product_id,
        user_id=current_user["id"],
        order_id=payload.order_id,
        rating=payload.rating,
    ))
    refresh_product_rating(db, payload.product_id)
    return {"message": "Review submitted successfully", "review": review}

@app.delete("/api/reviews/{review_id}")
def delete_review(review_id: str, current_user=Depends(get_current_user), db: Database = Depends(get_db)):
    review = find_or_404(db, "review", review_id, "Review")
    if review["user_id"] != current_user["id"]:
        raise HTTPException(status_code=403, detail="Not authorized to delete this review")
    db["review"].delete_one({"_id": review["_id"]})
    refresh_product_rating(db, review["product_id"])
    return {"message": "Review deleted successfully"}


# Admin Routes
@app.post("/api/admin/products", status_code=201)
def admin_create_product(
    name: str = Form(...),
    description: str = Form(...),
    price: float = Form(..., ge=0),
    stock: int = Form(..., ge=0),
    category: str = Form(...),
    images: Optional[List[UploadFile]] = File(None),
    admin=Depends(require_admin),
    db: Database = Depends(get_db),
):
    if not images:
        raise HTTPException(status_code=400, detail="At least one image is required")
    if len(images) > MAX_IMAGES_PER_PRODUCT:
        raise HTTPException(status_code=400, detail=f"Maximum {MAX_IMAGES_PER_PRODUCT} images allowed")
    product = ProductSchema(name=name, description=description, price=price, stock=stock, category=category)
    product.images = save_images(images)
    try:
        return insert(db, "product", product)
    except Exception:
        delete_images(product.images)
        raise

@app.get("/api/admin/products")
def admin_list_products(admin=Depends(require_admin), db: Database = Depends(get_db)):
    return [sanitize(p) for p in db["product"].find().sort("created_at", DESCENDING)]

@app.put("/api/admin/products/{product_id}")
def admin_update_product(
    product_id: str,
    name: Optional[str] = Form(None),
    description: Optional[str] = Form(None),
    price: Optional[float] = Form(None, ge=0),
    stock: Optional[int] = Form(None, ge=0),
    category: Optional[str] = Form(None),
    images: Optional[List[UploadFile]] = File(None),
    admin=Depends(require_admin),
    db: Database = Depends(get_db),
):
    product = find_or_404(db, "product", product_id, "Product")
    changes: Dict[str, Any] = {
        k: v
        for k, v in {"name": name, "description": description, "price": price, "stock": stock, "category": category}.items()
        if v is not None
    }
    if images:
        if len(images) > MAX_IMAGES_PER_PRODUCT:
            raise HTTPException(status_code=400, detail=f"Maximum {MAX_IMAGES_PER_PRODUCT} images allowed")
        changes["images"] = save_images(images)
    changes["updated_at"] = utcnow()
    try:
        db["product"].update_one({"_id": product["_id"]}, {"$set": changes})
    except Exception:
        delete_images(changes.get("images", []))
        raise
    if "images" in changes:
        delete_images(product.get("images", []))
    return sanitize({**product, **changes})

@app.delete("/api/admin/products/{product_id}")
def admin_delete_product(product_id: str, admin=Depends(require_admin), db: Database = Depends(get_db)):
    product = find_or_404(db, "product", product_id, "Product")
    delete_images(product.get("images", []))
    db["product"].delete_one({"_id": product["_id"]})
    logger.info("Product {} deleted by {}", product_id, admin["id"])
    return {"message": "Product deleted successfully"}

@app.get("/api/admin/orders")
def admin_list_orders(admin=Depends(require_admin), db: Database = Depends(get_db)):
    orders = [sanitize(o) for o in db["order"].find().sort("created_at", DESCENDING)]
    user_ids = [to_obj_id(i) for i in {o["user_id"] for o in orders}]
    users = {str(u["_id"]): u for u in db["user"].find({"_id": {"$in": user_ids}})} if user_ids else {}
    for o in orders:
        u = users.get(o["user_id"])
        o["user"] = {"name": u["name"], "email": u["email"]} if u else None
    return {"orders": orders}

@app.patch("/api/admin/orders/{order_id}/status")
def admin_update_order_status(
    order_id: str,
    payload: UpdateOrderStatusRequest,
    admin=Depends(require_admin),
    db: Database = Depends(get_db),
):
    if payload.status not in ORDER_STATUSES:
        raise HTTPException(status_code=400, detail="Invalid status")
    order = find_or_404(db, "order", order_id, "Order")
    changes: Dict[str, Any] = {"status": payload.status, "updated_at": utcnow()}
    if payload.status == "shipped" and not order.get("shipped_at"):
        changes["shipped_at"] = utcnow()
    if payload.status == "delivered" and not order.get("delivered_at"):
        changes["delivered_at"] = utcnow()
    db["order"].update_one({"_id": order["_id"]}, {"$set": changes})
    return {"message": "Order status updated successfully", "order": sanitize(db["order"].find_one({"_id": order["_id"]}))}

@app.get("/api/admin/customers")
def admin_list_customers(admin=Depends(require_admin), db: Database = Depends(get_db)):
    return {"customers": [sanitize(u) for u in db["user"].find().sort("created_at", DESCENDING)]}

@app.get("/api/admin/stats")
def admin_dashboard(admin=Depends(require_admin), db: Database = Depends(get_db)):
    revenue = list(db["order"].aggregate([{"$group": {"_id": None, "total": {"$sum": "$total_price"}}}]))
    return {
        "total_revenue": round(revenue[0]["total"], 2) if revenue else 0,
        "total_orders": db["order"].count_documents({}),
        "total_customers": db["user"].count_documents({}),
        "total_products": db["product"].count_documents({}),
    }


# Static files
def mount_admin_dashboard(app: FastAPI, settings: Settings) -> bool:
    """Serve the built admin dashboard at / in production when its dist folder exists."""
    if not settings.is_production or not Path(settings.admin_dist_dir).is_dir():
        return False
    app.mount("/", StaticFiles(directory=settings.admin_dist_dir, html=True), name="admin")
    logger.info("Serving admin dashboard from {}", settings.admin_dist_dir)
    return True


app.mount("/uploads", StaticFiles(directory=settings.upload_dir, check_dir=False), name="uploads")
mount_admin_dashboard(app, settings)
