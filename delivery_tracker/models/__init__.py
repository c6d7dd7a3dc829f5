"""
Delivery Tracker
Shared SQLAlchemy handle. Every model module imports ``db`` from here.
"""

from flask_sqlalchemy import SQLAlchemy

db = SQLAlchemy()
