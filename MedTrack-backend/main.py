from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from routes import auth_routes, barcode_routes, medication_routes
from config import settings
from database import create_tables
from logging_config import setup_logging

# Initialize logging
setup_logging()

app = FastAPI(
    title=f"{settings.app_name} - Medication Adherence Tracking",
    description="Patient and caregiver medication tracking with barcode dose logging and dosing safety checks",
    version="1.0.0"
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

@app.on_event("startup")
def startup_event():
    create_tables()

app.include_router(auth_routes.router, prefix="/auth", tags=["authentication"])
app.include_router(medication_routes.patient_router)
app.include_router(medication_routes.caregiver_router)
app.include_router(barcode_routes.router)

@app.get("/")
def home():
    return {"message": f"{settings.app_name} backend API is running"}
