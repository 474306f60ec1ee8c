from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel
from typing import List, Optional
from sqlalchemy.orm import Session
from examengine.core.database import get_db
from examengine.core.auth import require_roles
from examengine.services.selection import topic_inventory, available_count

router = APIRouter()

class TopicRow(BaseModel):
    topic: str
    available: int

class Availability(BaseModel):
    topic: str
    band: Optional[int] = None
    available: int

@router.get("/topics", response_model=List[TopicRow], dependencies=[Depends(require_roles("candidate","recruiter","editor","admin"))])
def list_topics(band: Optional[int] = Query(None, ge=1, le=5), db: Session = Depends(get_db)):
    return [TopicRow(**row) for row in topic_inventory(db, band)]

@router.get("/available", response_model=Availability, dependencies=[Depends(require_roles("candidate","recruiter","editor","admin"))])
def available(topic: str = Query(..., min_length=1), band: Optional[int] = Query(None, ge=1, le=5), db: Session = Depends(get_db)):
    return Availability(topic=topic.strip().lower(), band=band, available=available_count(db, topic, band))
